"""
Activities and the two kinds of registration against them.

``Activity.current_participants`` is shared with a database trigger in
production, so application code only ever changes it through
services/counter.py.
"""

from django.db import models

from activities.status_catalog import RegistrationStatus


class Activity(models.Model):
    activity_id = models.AutoField(primary_key=True)
    activity_name = models.CharField(max_length=200, null=True, blank=True)
    max_participants = models.IntegerField(null=True, blank=True)  # advisory only
    current_participants = models.IntegerField(null=True, blank=True, default=0)
    start_date = models.DateTimeField(null=True, blank=True)
    end_date = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, null=True, blank=True)

    class Meta:
        db_table = 'activity'
        ordering = ['activity_id']

    def __str__(self):
        return self.activity_name or f"Activity {self.activity_id}"


class _Registration(models.Model):
    registration_id = models.AutoField(primary_key=True)
    # No DB constraint: legacy rows may point at deleted activities.
    activity = models.ForeignKey(
        Activity,
        on_delete=models.DO_NOTHING,
        null=True,
        blank=True,
        db_column='activity_id',
        db_constraint=False,
        related_name='+',
    )
    status = models.CharField(max_length=20, null=True, blank=True, default=RegistrationStatus.PENDING.value)
    register_time = models.DateTimeField(null=True, blank=True)

    class Meta:
        abstract = True
        ordering = ['registration_id']

    def party_size(self) -> int:
        return 1


class CaseActivityRegistration(_Registration):
    """A case (client) signed up by their worker. Always counts as one participant."""
    case_id = models.IntegerField(null=True, blank=True)  # FK to legacy case table

    class Meta(_Registration.Meta):
        db_table = 'case_activity_registration'


class UserActivityRegistration(_Registration):
    """A member of the public, possibly bringing companions."""
    user_id = models.IntegerField(null=True, blank=True)  # FK to legacy user table
    number_of_companions = models.IntegerField(null=True, blank=True, default=0)

    class Meta(_Registration.Meta):
        db_table = 'user_activity_registration'

    def party_size(self) -> int:
        return 1 + max(int(self.number_of_companions or 0), 0)
