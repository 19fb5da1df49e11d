# fees/signals.py

"""
Fee Management Signal Handlers

- Receipt number generation for fee collections
"""

from django.db.models.signals import pre_save
from django.dispatch import receiver
import logging

from fees.utils import generate_receipt_number

logger = logging.getLogger(__name__)


# =============================================================================
# FEE COLLECTION SIGNALS
# =============================================================================

@receiver(pre_save, sender='fees.FeeCollection')
def fee_collection_pre_save(sender, instance, **kwargs):
    """Auto-generate the receipt number for new collections."""
    if not instance.receipt_number:
        instance.receipt_number = generate_receipt_number(instance.branch, instance.session)
        logger.info(f"Generated receipt number: {instance.receipt_number}")
