from django.core.management.base import BaseCommand, CommandError
from django.utils.timezone import now

from donations import bus
from donations.exceptions import DonationError
from donations.policy import Actor


def _describe(event) -> str:
    record = event.record
    change = record.status if event.prior_status is None else f"{event.prior_status} -> {record.status}"
    return f"#{event.seq} {event.kind:<7} {record.pk} {change} ({record.quantity} {record.food_type})"


class Command(BaseCommand):
    help = "Tail the donation change feed as one actor sees it."

    def add_arguments(self, parser):
        parser.add_argument("--actor", required=True, help="Profile id to subscribe as.")
        parser.add_argument("--after", default=None, help="Resume from this feed position (as printed on exit).")
        parser.add_argument("--limit", type=int, default=0, help="Stop after this many events (0 = follow forever).")
        parser.add_argument("--resync", action="store_true", help="Print a full read of visible donations first.")
        parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between feed polls.")

    def handle(self, *args, **opts):
        try:
            actor = Actor.resolve(opts["actor"])
        except DonationError as e:
            raise CommandError(f"Cannot subscribe: {e.detail}")

        after = opts["after"]
        limit = max(0, int(opts["limit"]))

        if opts["resync"]:
            records, after = bus.resync(actor)
            self.stdout.write(self.style.HTTP_INFO(f"[{now().isoformat()}] {len(records)} visible donation(s), position={after}"))
            for record in records:
                self.stdout.write(f"  {record.pk} {record.status:<9} {record.quantity} {record.food_type}")

        try:
            subscription = bus.subscribe(actor, after=after, poll_interval=opts["poll_interval"])
        except DonationError as e:
            raise CommandError(f"Cannot subscribe: {e.detail}")
        self.stdout.write(self.style.HTTP_INFO(
            f"[{now().isoformat()}] Watching as {actor.role} {actor.id} from #{subscription.position}…"
        ))

        seen = 0
        try:
            for event in subscription:
                self.stdout.write(_describe(event))
                seen += 1
                if limit and seen >= limit:
                    break
        except KeyboardInterrupt:
            pass
        except DonationError as e:
            raise CommandError(f"Feed stopped: {e.detail}")
        finally:
            subscription.close()

        self.stdout.write(self.style.SUCCESS(f"Done. events={seen} position={subscription.position}"))
