# students/models.py

from django.db import models
from utils.models import BaseModel
import logging

logger = logging.getLogger(__name__)


class Student(BaseModel):
    """Core model for student information used by fee collection"""

    # -------------------------------------------------------------------------
    # CHOICE FIELDS
    # -------------------------------------------------------------------------

    STUDENT_TYPE_CHOICES = (
        ('NEW_ADMISSION', 'New Admission'),
        ('OLD_STUDENT', 'Old Student'),
    )

    # -------------------------------------------------------------------------
    # IDENTIFICATION & BASIC INFORMATION
    # -------------------------------------------------------------------------

    admission_number = models.CharField(
        "Admission Number",
        max_length=30,
        unique=True,
        db_index=True
    )
    first_name = models.CharField("First Name", max_length=100)
    last_name = models.CharField("Last Name", max_length=100, blank=True)
    email = models.EmailField("Email", blank=True)
    phone = models.CharField("Phone", max_length=20, blank=True)
    guardian_name = models.CharField("Guardian Name", max_length=150, blank=True)

    # -------------------------------------------------------------------------
    # PLACEMENT
    # -------------------------------------------------------------------------

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name="students"
    )
    section = models.ForeignKey(
        'academics.Section',
        verbose_name="Section",
        on_delete=models.SET_NULL,
        related_name="students",
        null=True,
        blank=True
    )
    student_type = models.CharField(
        "Student Type",
        max_length=20,
        choices=STUDENT_TYPE_CHOICES,
        default='OLD_STUDENT'
    )
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Student"
        verbose_name_plural = "Students"
        ordering = ['first_name', 'last_name']
        indexes = [
            models.Index(fields=['branch', 'is_active']),
        ]

    def __str__(self):
        return f"{self.get_full_name()} ({self.admission_number})"

    def get_full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def is_enrolled_in(self, session):
        """True when the student's section sits in the given session."""
        if self.section_id is None:
            return False
        return self.section.school_class.academic_session_id == getattr(session, 'pk', session)
