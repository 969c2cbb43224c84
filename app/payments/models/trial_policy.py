"""
TrialPolicy model: per-region / per-tier trial configuration.

Rows are optional. When no row matches, the TRIAL_* settings apply.

Resolution order (most specific first):
    region + tier -> region only -> tier only -> settings defaults

Usage:
    from payments.models import TrialPolicy

    policy = TrialPolicy.resolve(region_code="NG", tier="salon")
    policy.trial_enabled, policy.trial_duration_days
"""

from __future__ import annotations

from dataclasses import dataclass

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from core.models import BaseModel

from payments.state_machines import SubscriptionTier


@dataclass(frozen=True)
class ResolvedTrialPolicy:
    """Effective trial settings for one subscription."""

    trial_enabled: bool
    trial_duration_days: int
    grace_days: int
    cancel_grace_days: int
    source: str


class TrialPolicy(BaseModel):
    """
    Trial configuration override.

    Fields:
        region_code: Region the row applies to (blank = every region)
        tier: Tier the row applies to (blank = every tier)
        trial_enabled: Whether new subscriptions start in a trial
        trial_duration_days: Trial length, 1..365
        grace_days: Days after trial_end before past_due
        cancel_grace_days: Days in past_due before canceled
    """

    region_code = models.CharField(max_length=8, blank=True, default="")

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        blank=True,
        default="",
    )

    trial_enabled = models.BooleanField(default=True)

    trial_duration_days = models.PositiveIntegerField(
        default=60,
        validators=[MinValueValidator(1), MaxValueValidator(365)],
    )

    grace_days = models.PositiveIntegerField(default=0)

    cancel_grace_days = models.PositiveIntegerField(default=7)

    class Meta:
        verbose_name = "Trial Policy"
        verbose_name_plural = "Trial Policies"
        constraints = [
            models.UniqueConstraint(
                fields=["region_code", "tier"],
                name="trial_policy_unique_scope",
            ),
            models.CheckConstraint(
                condition=models.Q(trial_duration_days__gte=1)
                & models.Q(trial_duration_days__lte=365),
                name="trial_policy_duration_range",
            ),
        ]

    def __str__(self) -> str:
        scope = f"{self.region_code or '*'}/{self.tier or '*'}"
        return f"TrialPolicy({scope}, enabled={self.trial_enabled})"

    def as_resolved(self) -> ResolvedTrialPolicy:
        return ResolvedTrialPolicy(
            trial_enabled=self.trial_enabled,
            trial_duration_days=self.trial_duration_days,
            grace_days=self.grace_days,
            cancel_grace_days=self.cancel_grace_days,
            source=f"policy:{self.pk}",
        )

    @classmethod
    def resolve(cls, region_code: str, tier: str) -> ResolvedTrialPolicy:
        """Return the most specific policy for a region and tier."""
        for scope in (
            {"region_code": region_code, "tier": tier},
            {"region_code": region_code, "tier": ""},
            {"region_code": "", "tier": tier},
        ):
            policy = cls.objects.filter(**scope).first()
            if policy is not None:
                return policy.as_resolved()

        return ResolvedTrialPolicy(
            trial_enabled=settings.TRIAL_ENABLED_DEFAULT,
            trial_duration_days=settings.TRIAL_DURATION_DAYS,
            grace_days=settings.TRIAL_GRACE_DAYS,
            cancel_grace_days=settings.TRIAL_CANCEL_GRACE_DAYS,
            source="settings",
        )
