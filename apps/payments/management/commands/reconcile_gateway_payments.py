# management/commands/reconcile_gateway_payments.py

"""
Scan successful gateway transactions for money that is missing from, or
wrongly recorded in, the collection ledger and open reconciliation
exceptions for them.

USAGE EXAMPLES:
===============

# 1. Scan every branch
python manage.py reconcile_gateway_payments

# 2. Scan one branch (by code)
python manage.py reconcile_gateway_payments --branch PS

# 3. Scan one branch and session
python manage.py reconcile_gateway_payments --branch PS --session 2025-26
"""

from django.core.management.base import BaseCommand, CommandError
import logging

from academics.models import Branch, AcademicSession
from payments.models import ReconciliationException
from payments.reconciliation import ReconciliationService
from utils.context import RequestContext

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Open reconciliation exceptions for gateway payments missing from the ledger'

    def add_arguments(self, parser):
        parser.add_argument(
            '--branch', type=str, default=None,
            help='Branch code to limit the scan to'
        )
        parser.add_argument(
            '--session', type=str, default=None,
            help='Academic session name to limit the scan to (requires --branch)'
        )

    def handle(self, *args, **options):
        branch = session = None
        if options['branch']:
            branch = Branch.objects.filter(code=options['branch']).first()
            if branch is None:
                raise CommandError(f"Branch '{options['branch']}' not found")
        if options['session']:
            if branch is None:
                raise CommandError("--session requires --branch")
            session = AcademicSession.objects.filter(branch=branch, name=options['session']).first()
            if session is None:
                raise CommandError(f"Session '{options['session']}' not found for branch {branch.code}")

        with RequestContext(request_path='manage.py reconcile_gateway_payments'):
            opened = ReconciliationService.scan(branch=branch, session=session)

        self.stdout.write(self.style.SUCCESS(
            f"Opened {opened['MISSING_COLLECTION']} missing-collection and "
            f"{opened['AMOUNT_MISMATCH']} amount-mismatch exception(s)"
        ))
        open_count = ReconciliationException.objects.filter(status='OPEN').count()
        if open_count:
            self.stdout.write(self.style.WARNING(f"{open_count} reconciliation exception(s) are open"))
