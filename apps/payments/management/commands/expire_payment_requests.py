# management/commands/expire_payment_requests.py

"""
Persist EXPIRED on payment requests and gateway transactions whose expiry
has passed. Readers already treat them as expired; run this periodically
(cron) so stored status catches up.

USAGE EXAMPLES:
===============

# 1. Expire everything past its expiry now
python manage.py expire_payment_requests

# 2. Show how many would expire without writing
python manage.py expire_payment_requests --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone
import logging

from payments.models import PaymentRequest, OPEN_STATUSES
from payments.services import PaymentRequestService
from utils.context import RequestContext

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Mark stale payment requests and transactions as EXPIRED'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run', action='store_true',
            help='Only report how many payment requests are past their expiry'
        )

    def handle(self, *args, **options):
        with RequestContext(request_path='manage.py expire_payment_requests'):
            if options['dry_run']:
                stale = PaymentRequest.objects.filter(
                    status__in=OPEN_STATUSES, expires_at__lte=timezone.now()
                ).count()
                self.stdout.write(f"{stale} payment request(s) are past their expiry")
                return

            requests_expired, transactions_expired = PaymentRequestService.expire_stale_requests()

        self.stdout.write(self.style.SUCCESS(
            f"Expired {requests_expired} payment request(s) and {transactions_expired} transaction(s)"
        ))
