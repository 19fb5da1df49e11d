# concessions/signals.py

"""
Concession Signal Handlers

- Concession history is append-only, including bulk queryset deletes
"""

from django.db.models.signals import pre_delete
from django.dispatch import receiver
import logging

from utils.exceptions import ConflictError

logger = logging.getLogger(__name__)


@receiver(pre_delete, sender='concessions.ConcessionHistory')
def concession_history_pre_delete(sender, instance, **kwargs):
    logger.warning(f"Blocked deletion of concession history record {instance.pk}")
    raise ConflictError("Concession history records cannot be deleted")
