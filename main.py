import argparse
import logging
import sys

from deskbook.config import Settings, load_settings
from deskbook.domain import BookingError, TimeWindow, parse_date, parse_time
from deskbook.notifier import LogNotifier, Notifier, TelegramNotifier
from deskbook.policy import load_policies
from deskbook.service import BookingService
from deskbook.state_file import JsonFileStore


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _build_notifier(settings: Settings) -> Notifier:
    if not settings.telegram_enabled:
        return LogNotifier()
    return TelegramNotifier(
        bot_token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
        max_retries=settings.notify_max_retries,
        retry_delay_seconds=settings.notify_retry_delay_seconds,
    )


def build_service(settings: Settings) -> BookingService:
    return BookingService(
        JsonFileStore(settings.state_dir),
        load_policies(settings.policy_file),
        _build_notifier(settings),
        default_actor=settings.default_actor,
    )


def _add_window_args(parser: argparse.ArgumentParser, *, required: bool = True) -> None:
    parser.add_argument("--date", required=required, help="YYYY-MM-DD")
    parser.add_argument("--start", required=required, help="HH:MM")
    parser.add_argument("--end", required=required, help="HH:MM")


def _window(args: argparse.Namespace) -> TimeWindow:
    return TimeWindow.parse(args.date, args.start, args.end)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="deskbook: coworking resource bookings")
    parser.add_argument("--actor", default=None, help="Who performs the change (defaults to DEFAULT_ACTOR)")
    sub = parser.add_subparsers(dest="command", required=True)

    book = sub.add_parser("book", help="Request a booking")
    book.add_argument("resource")
    book.add_argument("--owner", required=True)
    book.add_argument("--name", default="")
    book.add_argument("--contact", default="")
    _add_window_args(book)

    cancel = sub.add_parser("cancel", help="Cancel a booking")
    cancel.add_argument("resource")
    cancel.add_argument("booking_id")

    block = sub.add_parser("block", help="Block a window administratively")
    block.add_argument("resource")
    block.add_argument("--reason", required=True)
    _add_window_args(block)

    unblock = sub.add_parser("unblock", help="Remove a block")
    unblock.add_argument("resource")
    unblock.add_argument("block_id")

    withdraw = sub.add_parser("withdraw", help="Leave the waitlist")
    withdraw.add_argument("resource")
    withdraw.add_argument("party_id")
    _add_window_args(withdraw, required=False)

    listing = sub.add_parser("list", help="Show bookings, blocks and waitlist for a day")
    listing.add_argument("resource")
    listing.add_argument("--date", required=True, help="YYYY-MM-DD")

    free = sub.add_parser("free", help="Show windows still open for booking on a day")
    free.add_argument("resource")
    free.add_argument("--date", required=True, help="YYYY-MM-DD")
    free.add_argument("--from", dest="opens", default="08:00", help="Opening time, HH:MM")
    free.add_argument("--to", dest="closes", default="20:00", help="Closing time, HH:MM")

    return parser


def _run(service: BookingService, args: argparse.Namespace) -> int:
    if args.command == "book":
        outcome = service.request_booking(
            args.resource,
            _window(args),
            args.owner,
            name=args.name,
            contact=args.contact,
            actor=args.actor,
        )
        decision = outcome.decision
        if decision.accepted:
            print(f"accepted booking_id={outcome.booking.id}")
            return 0
        if decision.waitlisted:
            print(f"waitlisted position={len(service.waitlist(args.resource, decision.window))}")
            return 0
        print(f"rejected reason={decision.reason.value}")
        return 1

    if args.command == "cancel":
        release = service.cancel_booking(args.resource, args.booking_id, actor=args.actor)
        print(f"cancelled booking_id={release.entry.id}")
        for booking in release.promotion.promoted:
            print(f"promoted owner={booking.owner_id} booking_id={booking.id}")
        return 0

    if args.command == "block":
        outcome = service.add_block(args.resource, _window(args), args.reason, actor=args.actor)
        if outcome.decision.accepted:
            print(f"blocked block_id={outcome.block.id}")
            return 0
        print(f"rejected reason={outcome.decision.reason.value}")
        return 1

    if args.command == "unblock":
        release = service.remove_block(args.resource, args.block_id, actor=args.actor)
        print(f"unblocked block_id={release.entry.id}")
        for booking in release.promotion.promoted:
            print(f"promoted owner={booking.owner_id} booking_id={booking.id}")
        return 0

    if args.command == "withdraw":
        window = _window(args) if args.date and args.start and args.end else None
        entry = service.withdraw(args.resource, args.party_id, window, actor=args.actor)
        print(f"withdrawn party={entry.party_id} window={entry.window}")
        return 0

    if args.command == "free":
        windows = service.free_windows(
            args.resource,
            parse_date(args.date),
            opens=parse_time(args.opens),
            closes=parse_time(args.closes),
        )
        for window in windows:
            print(f"free {window}")
        return 0

    # list
    day = parse_date(args.date)
    for booking in service.bookings_on(args.resource, day):
        print(f"booking {booking.id} {booking.window} owner={booking.owner_id}")
    for blk in service.blocks_on(args.resource, day):
        print(f"block {blk.id} {blk.window} reason={blk.reason}")
    for entry in service.waitlist(args.resource):
        if entry.window.date == day:
            print(f"waitlist {entry.party_id} {entry.window} joined={entry.joined_at.isoformat()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    _setup_logging()
    settings = load_settings()
    service = build_service(settings)

    try:
        return _run(service, args)
    except BookingError as e:
        logging.getLogger(__name__).error("%s: %s", type(e).__name__, e)
        print(f"error {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
