import uuid

import django.core.validators
import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Booking",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "region_code",
                    models.CharField(
                        help_text="Region code used to route payments (NA, EU, GH, NG)",
                        max_length=8,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        help_text="ISO 4217 currency code (upper-case), fixed at creation",
                        max_length=3,
                    ),
                ),
                (
                    "processor",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("paystack", "Paystack")],
                        help_text="Processor chosen at creation, never recomputed",
                        max_length=20,
                    ),
                ),
                (
                    "customer_ref",
                    models.CharField(
                        help_text="Customer identifier passed to the processor (email or id)",
                        max_length=255,
                    ),
                ),
                (
                    "deposit_amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Deposit amount in smallest currency unit",
                    ),
                ),
                (
                    "total_amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Total amount in smallest currency unit",
                    ),
                ),
                (
                    "amount_paid_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Sum of verified charges applied to this booking",
                    ),
                ),
                (
                    "amount_refunded_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Sum of succeeded refunds applied to this booking",
                    ),
                ),
                (
                    "payment_status",
                    django_fsm.FSMField(
                        choices=[
                            ("AWAITING_DEPOSIT", "Awaiting Deposit"),
                            ("DEPOSIT_PAID", "Deposit Paid"),
                            ("FULLY_PAID", "Fully Paid"),
                            ("PARTIALLY_REFUNDED", "Partially Refunded"),
                            ("REFUNDED", "Refunded"),
                        ],
                        db_index=True,
                        default="AWAITING_DEPOSIT",
                        help_text="Payment status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "confirmed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the provider confirmed the appointment",
                        null=True,
                    ),
                ),
                ("deposit_paid_at", models.DateTimeField(blank=True, null=True)),
                ("fully_paid_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
                (
                    "client",
                    models.ForeignKey(
                        blank=True,
                        help_text="Client account that made the booking",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bookings",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Booking",
                "verbose_name_plural": "Bookings",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["processor", "payment_status"],
                        name="payments_bo_process_1c2e5a_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total_amount_cents__gt", 0)),
                        name="booking_total_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("deposit_amount_cents__gt", 0),
                            ("deposit_amount_cents__lte", models.F("total_amount_cents")),
                        ),
                        name="booking_deposit_within_total",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("amount_refunded_cents__lte", models.F("amount_paid_cents"))
                        ),
                        name="booking_refunds_within_paid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=[("solo", "Solo"), ("salon", "Salon")],
                        max_length=20,
                    ),
                ),
                ("region_code", models.CharField(max_length=8)),
                (
                    "processor",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("paystack", "Paystack")],
                        max_length=20,
                    ),
                ),
                ("currency", models.CharField(max_length=3)),
                (
                    "price_cents",
                    models.PositiveBigIntegerField(
                        help_text="Plan price in smallest currency unit",
                    ),
                ),
                ("customer_ref", models.CharField(max_length=255)),
                (
                    "payment_method_ref",
                    models.CharField(
                        blank=True,
                        help_text="Processor-saved payment method, once collected",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("trial_enabled", models.BooleanField()),
                ("trial_duration_days", models.PositiveIntegerField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, db_index=True, null=True)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                        ],
                        db_index=True,
                        default="trialing",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("activated_at", models.DateTimeField(blank=True, null=True)),
                ("past_due_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.CharField(blank=True, max_length=100, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="plan_subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "trial_end"],
                        name="payments_su_status_4b7d21_idx",
                    ),
                    models.Index(
                        fields=["owner", "status"],
                        name="payments_su_owner_i_9e0f63_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "trialing"), ("trial_enabled", False)),
                            _negated=True,
                        ),
                        name="subscription_no_trialing_without_trial",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("price_cents__gt", 0)),
                        name="subscription_price_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "processor",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("paystack", "Paystack")],
                        max_length=20,
                    ),
                ),
                (
                    "processor_reference",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Processor transaction reference",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Caller idempotency key (one transaction per key)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "client_action_token",
                    models.TextField(
                        blank=True,
                        help_text="Token or URL the client uses to complete the charge",
                        null=True,
                    ),
                ),
                (
                    "stage",
                    models.CharField(
                        choices=[
                            ("deposit", "Deposit"),
                            ("balance", "Balance"),
                            ("full", "Full Amount"),
                            ("subscription", "Subscription"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Expected charge amount in smallest currency unit",
                    ),
                ),
                ("currency", models.CharField(max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("initiated", "Initiated"),
                            ("verified", "Verified"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="initiated",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "failure_reason_code",
                    models.CharField(blank=True, max_length=50, null=True),
                ),
                ("failure_message", models.TextField(blank=True, null=True)),
                (
                    "payment_method_ref",
                    models.CharField(
                        blank=True,
                        help_text="Reusable payment method reported on verification",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "needs_review",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="An event for this charge could not be applied automatically",
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "booking",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="payments.booking",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="payments.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Transaction",
                "verbose_name_plural": "Payment Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="payments_pa_status_8a3c10_idx",
                    ),
                    models.Index(
                        fields=["booking", "status"],
                        name="payments_pa_booking_5d2e94_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("booking__isnull", False), ("subscription__isnull", True)),
                            models.Q(("booking__isnull", True), ("subscription__isnull", False)),
                            _connector="OR",
                        ),
                        name="transaction_single_owner",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="transaction_amount_positive",
                    ),
                    models.UniqueConstraint(
                        fields=("processor", "processor_reference"),
                        name="transaction_unique_processor_reference",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "verified")),
                        fields=("booking", "stage"),
                        name="transaction_one_verified_per_stage",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Refund",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Refund amount in smallest currency unit",
                    ),
                ),
                ("currency", models.CharField(max_length=3)),
                (
                    "reason",
                    models.CharField(
                        blank=True,
                        help_text="Reason for the refund (visible to the requester)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PROCESSING", "Processing"),
                            ("SUCCEEDED", "Succeeded"),
                            ("FAILED", "Failed"),
                        ],
                        db_index=True,
                        default="PENDING",
                        help_text="Current state of the refund (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "processor_refund_ref",
                    models.CharField(
                        blank=True,
                        help_text="Processor refund identifier",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Idempotency key sent with the processor refund request",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "request_key",
                    models.CharField(
                        db_index=True,
                        help_text="Caller key of the refund request this slice belongs to",
                        max_length=255,
                    ),
                ),
                ("processing_at", models.DateTimeField(blank=True, null=True)),
                ("succeeded_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True,
                        help_text="Reason the refund failed",
                        null=True,
                    ),
                ),
                ("needs_review", models.BooleanField(db_index=True, default=False)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "booking",
                    models.ForeignKey(
                        help_text="Booking being refunded",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="payments.booking",
                    ),
                ),
                (
                    "payment_transaction",
                    models.ForeignKey(
                        help_text="Verified charge being refunded",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="payments.paymenttransaction",
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="requested_refunds",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund",
                "verbose_name_plural": "Refunds",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["booking", "state"],
                        name="payments_re_booking_0f4b72_idx",
                    ),
                    models.Index(
                        fields=["state", "created_at"],
                        name="payments_re_state_6c91ad_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="refund_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TrialPolicy",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                ("region_code", models.CharField(blank=True, default="", max_length=8)),
                (
                    "tier",
                    models.CharField(
                        blank=True,
                        choices=[("solo", "Solo"), ("salon", "Salon")],
                        default="",
                        max_length=20,
                    ),
                ),
                ("trial_enabled", models.BooleanField(default=True)),
                (
                    "trial_duration_days",
                    models.PositiveIntegerField(
                        default=60,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(365),
                        ],
                    ),
                ),
                ("grace_days", models.PositiveIntegerField(default=0)),
                ("cancel_grace_days", models.PositiveIntegerField(default=7)),
            ],
            options={
                "verbose_name": "Trial Policy",
                "verbose_name_plural": "Trial Policies",
                "constraints": [
                    models.UniqueConstraint(
                        fields=("region_code", "tier"),
                        name="trial_policy_unique_scope",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("trial_duration_days__gte", 1),
                            ("trial_duration_days__lte", 365),
                        ),
                        name="trial_policy_duration_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="IdempotencyRecord",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "key",
                    models.CharField(
                        help_text="Namespaced idempotency key",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("webhook", "Inbound Webhook"),
                            ("outbound", "Outbound Request"),
                            ("reconcile", "Reconciliation / Confirm"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                (
                    "processor",
                    models.CharField(
                        blank=True,
                        choices=[("stripe", "Stripe"), ("paystack", "Paystack")],
                        default="",
                        max_length=20,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(blank=True, db_index=True, default="", max_length=100),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("reserved", "Reserved"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="reserved",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("normalized_event", models.JSONField(blank=True, null=True)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("outcome", models.JSONField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Idempotency Record",
                "verbose_name_plural": "Idempotency Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="payments_id_status_2e8f45_idx",
                    ),
                    models.Index(
                        fields=["kind", "status"],
                        name="payments_id_kind_7b3a09_idx",
                    ),
                    models.Index(
                        fields=["status", "retry_count"],
                        name="payments_id_status_c51d86_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationRun",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("started_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "stale_after_minutes",
                    models.PositiveIntegerField(
                        help_text="Records untouched for longer than this were checked",
                    ),
                ),
                ("transactions_checked", models.PositiveIntegerField(default=0)),
                ("refunds_checked", models.PositiveIntegerField(default=0)),
                (
                    "events_applied",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Terminal results fed through the event processor",
                    ),
                ),
                (
                    "duplicates_skipped",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Results already recorded in the idempotency ledger",
                    ),
                ),
                ("flagged_for_review", models.PositiveIntegerField(default=0)),
                ("errors", models.PositiveIntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("running", "Running"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="running",
                        max_length=20,
                    ),
                ),
                ("error_message", models.TextField(blank=True)),
            ],
            options={
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "started_at"],
                        name="payments_re_status_3f0a7e_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationDiscrepancy",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "entity_type",
                    models.CharField(
                        db_index=True,
                        help_text="transaction or refund",
                        max_length=50,
                    ),
                ),
                ("entity_id", models.UUIDField()),
                ("processor_reference", models.CharField(blank=True, max_length=255)),
                ("discrepancy_type", models.CharField(db_index=True, max_length=100)),
                ("local_state", models.CharField(max_length=50)),
                ("processor_state", models.CharField(blank=True, max_length=50)),
                ("details", models.JSONField(blank=True, default=dict)),
                (
                    "resolution",
                    models.CharField(
                        choices=[
                            ("auto_healed", "Auto Healed"),
                            ("flagged_for_review", "Flagged for Review"),
                            ("failed_to_heal", "Failed to Heal"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("action_taken", models.TextField(blank=True)),
                ("error_message", models.TextField(blank=True)),
                ("reviewed", models.BooleanField(db_index=True, default=False)),
                ("reviewed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "run",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="discrepancies",
                        to="payments.reconciliationrun",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Reconciliation discrepancies",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["resolution", "reviewed"],
                        name="payments_re_resolut_8d24b1_idx",
                    ),
                    models.Index(
                        fields=["entity_type", "entity_id"],
                        name="payments_re_entity__a6e3f2_idx",
                    ),
                ],
            },
        ),
    ]
