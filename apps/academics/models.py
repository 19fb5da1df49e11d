# academics/models.py

from django.db import models
from django.core.exceptions import ValidationError
from utils.models import BaseModel
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# BRANCH MODEL
# =============================================================================

class Branch(BaseModel):
    """
    A campus of the school group. Every fee, concession and payment record
    is scoped to one branch; the short code appears on receipt numbers.
    """

    name = models.CharField("Branch Name", max_length=150)
    code = models.CharField(
        "Branch Code",
        max_length=10,
        unique=True,
        help_text="Short code used in receipt numbers, e.g. 'PS'"
    )
    address = models.TextField("Address", blank=True)
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Branch"
        verbose_name_plural = "Branches"
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.code})"


# =============================================================================
# ACADEMIC SESSION MODEL
# =============================================================================

class AcademicSession(BaseModel):
    """Academic year for a branch, e.g. '2025-26'."""

    branch = models.ForeignKey(
        Branch,
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name="sessions"
    )
    name = models.CharField("Session Name", max_length=20, help_text="E.g., '2025-26'")
    start_date = models.DateField("Start Date")
    end_date = models.DateField("End Date")
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Academic Session"
        verbose_name_plural = "Academic Sessions"
        ordering = ['-start_date']
        constraints = [
            models.UniqueConstraint(fields=['branch', 'name'], name='unique_session_name_per_branch'),
        ]

    def __str__(self):
        return f"{self.name} - {self.branch.code}"

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValidationError({'end_date': 'End date must be after start date.'})


# =============================================================================
# CLASS & SECTION MODELS
# =============================================================================

class Class(BaseModel):
    """A grade/class offered by a branch in one session (e.g. 'Grade 5')."""

    branch = models.ForeignKey(
        Branch,
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name="classes"
    )
    academic_session = models.ForeignKey(
        AcademicSession,
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name="classes"
    )
    name = models.CharField("Class Name", max_length=50)
    display_order = models.PositiveIntegerField("Display Order", default=0)
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Class"
        verbose_name_plural = "Classes"
        ordering = ['display_order', 'name']

    def __str__(self):
        return self.name


class Section(BaseModel):
    """
    A division of a class (e.g. 'Grade 5 - A'). Fee slabs are priced
    per section, so two sections of the same class may pay differently.
    """

    school_class = models.ForeignKey(
        Class,
        verbose_name="Class",
        on_delete=models.PROTECT,
        related_name="sections"
    )
    name = models.CharField("Section Name", max_length=10, help_text="E.g., A, B, C")
    capacity = models.PositiveIntegerField("Capacity", default=40)
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Section"
        verbose_name_plural = "Sections"
        ordering = ['school_class__display_order', 'name']
        constraints = [
            models.UniqueConstraint(fields=['school_class', 'name'], name='unique_section_per_class'),
        ]

    def __str__(self):
        return f"{self.school_class.name} - {self.name}"

    @property
    def branch_id(self):
        return self.school_class.branch_id

    @property
    def session_id(self):
        return self.school_class.academic_session_id

    def belongs_to(self, branch, session):
        return (
            self.school_class.branch_id == getattr(branch, 'pk', branch)
            and self.school_class.academic_session_id == getattr(session, 'pk', session)
        )
