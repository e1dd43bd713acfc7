from django.conf import settings
from django.core.management.base import BaseCommand

from payments.replay import DatabaseReplayGuard


class Command(BaseCommand):
    help = "Delete replay-guard keys older than the replay window (safe to run from cron)"

    def add_arguments(self, parser):
        parser.add_argument(
            "--window",
            type=int,
            default=None,
            help="Window in seconds (defaults to PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS)",
        )

    def handle(self, *args, **options):
        window = options["window"] or int(getattr(settings, "PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS", 300))
        deleted = DatabaseReplayGuard(window).prune()
        self.stdout.write(self.style.SUCCESS(f"Pruned {deleted} replay keys"))
