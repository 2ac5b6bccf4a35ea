"""
Django models for recurring supply needs and their distribution batches.

Case, worker and supply master data live in legacy tables owned by other parts
of the platform; they are referenced here by plain integer ids and looked up
through services/data_access.py.
"""

from django.db import models
from django.core.validators import MinValueValidator

from supplies.status_catalog import BatchStatus, NeedStatus


class DistributionBatch(models.Model):
    """
    A group of collected needs handed out together and approved or rejected
    as one unit by a supervisor.
    """
    STATUS_CHOICES = [(status.value, status.name.title()) for status in BatchStatus]

    distribution_batch_id = models.AutoField(primary_key=True)
    distribution_date = models.DateTimeField()
    case_count = models.IntegerField(default=0, validators=[MinValueValidator(0)])
    total_supply_items = models.IntegerField(default=0, validators=[MinValueValidator(0)])
    created_by_worker_id = models.IntegerField()  # FK to legacy worker table
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=BatchStatus.PENDING.value)
    created_at = models.DateTimeField(auto_now_add=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    # Also records the rejecting supervisor.
    approved_by_worker_id = models.IntegerField(null=True, blank=True)
    notes = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'regular_distribution_batch'
        ordering = ['-distribution_date']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['distribution_date']),
        ]

    def __str__(self):
        return f"Batch {self.distribution_batch_id} ({self.status})"


class SupplyNeed(models.Model):
    """
    A single recurring-supply request raised for a case.
    """
    STATUS_CHOICES = [(status.value, status.name.replace('_', ' ').title()) for status in NeedStatus]

    need_id = models.AutoField(primary_key=True)
    case_id = models.IntegerField(null=True, blank=True)  # FK to legacy case table
    supply_id = models.IntegerField(null=True, blank=True)  # FK to legacy supply table
    quantity = models.IntegerField(default=0, validators=[MinValueValidator(0)])
    apply_date = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, default=NeedStatus.PENDING.value)
    pickup_date = models.DateTimeField(null=True, blank=True)
    batch = models.ForeignKey(
        DistributionBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='needs',
        db_column='batch_id',
    )

    class Meta:
        db_table = 'regular_supplies_need'
        ordering = ['-apply_date', '-need_id']
        indexes = [
            models.Index(fields=['case_id']),
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return f"Need {self.need_id} ({self.status})"


class SupplyMatch(models.Model):
    """
    Append-only note that a worker matched stock to a need.
    Not part of the need state machine.
    """
    match_id = models.AutoField(primary_key=True)
    need = models.ForeignKey(
        SupplyNeed,
        on_delete=models.CASCADE,
        related_name='matches',
        db_column='regular_need_id',
    )
    matched_quantity = models.IntegerField(null=True, blank=True)
    matched_by_worker_id = models.IntegerField(null=True, blank=True)  # FK to legacy worker table
    match_date = models.DateTimeField(auto_now_add=True)
    note = models.CharField(max_length=500, null=True, blank=True)

    class Meta:
        db_table = 'regular_supply_match'
        ordering = ['-match_date']

    def __str__(self):
        return f"Match {self.match_id} for need {self.need_id}"
