"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedModelMixin: Integer ``version`` column bumped on every save

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin

    class Booking(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
        total_amount_cents = models.PositiveBigIntegerField()

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models
from django.db.models import F


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Identifiers are safe to hand to processors as metadata and to expose in
    URLs without leaking record counts.

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class VersionedModelMixin(models.Model):
    """
    Optimistic concurrency support.

    Every ``save()`` of an existing row increments ``version`` in the
    database with an F() expression. Conditional writes that must not lose a
    concurrent update go through ``payments.locks.save_with_version_check``,
    which compares the version the caller read with the stored one.

    Fields:
        version: Monotonic row version, starts at 1

    Warning:
        Models that combine this mixin with a protected django-fsm field must
        never call ``refresh_from_db()`` without ``fields=``; reloading a
        protected state field raises AttributeError.
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = self.pk is not None and not self._state.adding
        is_update = is_update and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
