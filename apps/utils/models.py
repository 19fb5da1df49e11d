# utils/models.py

"""
Base model shared by every fee, concession and payment record.

- UUID primary keys
- created/updated timestamps
- who made the change and from which IP, taken from the request context
- optional change reason
"""

from django.db import models
from django.utils import timezone
import uuid
import logging

from scholarpay.managers import TenantManager

logger = logging.getLogger(__name__)


# =============================================================================
# BASE MODEL
# =============================================================================

class BaseModel(models.Model):
    """
    Abstract base with audit trail fields populated from the thread-local
    request context (see utils.context).
    """

    # Core identification
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    created_at = models.DateTimeField("Created At", default=timezone.now, db_index=True)
    updated_at = models.DateTimeField("Updated At", default=timezone.now)

    # User tracking - CharField so records never depend on the auth tables
    created_by_id = models.CharField(
        "Created By ID",
        max_length=50,
        null=True,
        blank=True,
        db_index=True,
        help_text="ID of user who created this record"
    )
    updated_by_id = models.CharField(
        "Updated By ID",
        max_length=50,
        null=True,
        blank=True,
        help_text="ID of user who last updated this record"
    )

    created_from_ip = models.GenericIPAddressField("Created From IP", null=True, blank=True)
    updated_from_ip = models.GenericIPAddressField("Updated From IP", null=True, blank=True)

    change_reason = models.CharField(
        "Change Reason",
        max_length=255,
        blank=True,
        null=True,
        help_text="Explanation for why this change was made"
    )

    objects = TenantManager()

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        from utils.context import get_request_context

        is_new = self._state.adding
        now = timezone.now()

        if is_new:
            if not self.created_at:
                self.created_at = now
        self.updated_at = now

        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            update_fields = set(update_fields) | {'updated_at'}

        context = get_request_context()
        if context:
            user = context.get('user')
            ip_address = context.get('ip_address')

            if is_new:
                if user and not self.created_by_id:
                    self.created_by_id = str(user.pk)
                if ip_address and not self.created_from_ip:
                    self.created_from_ip = ip_address

            if user:
                self.updated_by_id = str(user.pk)
                if update_fields is not None:
                    update_fields.add('updated_by_id')
            if ip_address:
                self.updated_from_ip = ip_address
                if update_fields is not None:
                    update_fields.add('updated_from_ip')
        elif is_new:
            logger.debug(
                f"No request context available when creating {self.__class__.__name__}. "
                f"Audit fields will not be populated."
            )

        if update_fields is not None:
            kwargs['update_fields'] = list(update_fields)

        return super().save(*args, **kwargs)
