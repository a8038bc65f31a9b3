from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Fabric",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100)),
                ("kind", models.CharField(choices=[("raw", "Raw (base) fabric"), ("finished", "Finished fabric")], max_length=10)),
                ("gsm", models.PositiveIntegerField(blank=True, null=True)),
                ("width_metres", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("coating_type", models.CharField(blank=True, max_length=50)),
                ("minimum_stock", models.DecimalField(decimal_places=2, default=Decimal("0.00"), help_text="Low-stock threshold (metres)", max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "base_fabric",
                    models.ForeignKey(
                        blank=True,
                        help_text="Raw fabric this finished fabric is coated from",
                        limit_choices_to={"kind": "raw"},
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="finished_fabrics",
                        to="production.fabric",
                    ),
                ),
            ],
            options={
                "ordering": ["name", "id"],
                "unique_together": {("name", "kind")},
            },
        ),
        migrations.CreateModel(
            name="CustomerOrder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_number", models.CharField(max_length=30, unique=True)),
                ("customer_name", models.CharField(max_length=150)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="Demand",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("line_no", models.PositiveIntegerField(default=1)),
                ("color", models.CharField(max_length=50)),
                ("quantity_requested", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity_allocated", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("status", models.CharField(choices=[("unmet", "Unmet"), ("partially_met", "Partially met"), ("fully_met", "Fully met")], default="unmet", max_length=15)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer_order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="production.customerorder",
                    ),
                ),
                (
                    "fabric",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="demands",
                        to="production.fabric",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [models.Index(fields=["fabric", "status", "created_at"], name="prod_demand_open_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("quantity_allocated__lte", models.F("quantity_requested"))),
                        name="demand_allocated_lte_requested",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ProductionOrder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_number", models.CharField(max_length=30, unique=True)),
                ("kind", models.CharField(choices=[("raw_weaving", "Weaving"), ("finish_coating", "Coating")], max_length=20)),
                ("color", models.CharField(blank=True, max_length=50)),
                ("required_quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("produced_quantity", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("waiting_materials", "Waiting for materials"),
                            ("in_progress", "In progress"),
                            ("on_hold", "On hold"),
                            ("completed", "Completed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "fabric",
                    models.ForeignKey(
                        help_text="Raw fabric for weaving, finished fabric for coating",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="production_orders",
                        to="production.fabric",
                    ),
                ),
                (
                    "linked_upstream_order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="downstream_orders",
                        to="production.productionorder",
                    ),
                ),
                (
                    "demand",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="production_orders",
                        to="production.demand",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [models.Index(fields=["linked_upstream_order", "status"], name="prod_order_upstream_idx")],
            },
        ),
        migrations.CreateModel(
            name="ProductionBatch",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("batch_number", models.CharField(max_length=40, unique=True)),
                ("kind", models.CharField(choices=[("raw_weaving", "Weaving"), ("finish_coating", "Coating")], max_length=20)),
                ("planned_quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("produced_quantity", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("wastage_quantity", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("input_quantity", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "production_order",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="batch",
                        to="production.productionorder",
                    ),
                ),
                (
                    "completed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="production_batches",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "verbose_name_plural": "production batches",
            },
        ),
        migrations.CreateModel(
            name="Roll",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("roll_number", models.CharField(max_length=60, unique=True)),
                ("fabric_kind", models.CharField(choices=[("raw", "Raw (base) fabric"), ("finished", "Finished fabric")], max_length=10)),
                ("color", models.CharField(blank=True, max_length=50)),
                ("quality_grade", models.CharField(choices=[("A", "A"), ("B", "B"), ("C", "C")], default="A", max_length=1)),
                ("roll_type", models.CharField(choices=[("standard_length", "Standard length"), ("short", "Short"), ("wastage", "Wastage")], max_length=20)),
                ("total_length", models.DecimalField(decimal_places=2, max_digits=12)),
                ("remaining_length", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("available", "Available"),
                            ("partially_allocated", "Partially allocated"),
                            ("allocated", "Allocated"),
                            ("used", "Used"),
                        ],
                        default="available",
                        max_length=20,
                    ),
                ),
                ("loom_number", models.CharField(blank=True, max_length=20)),
                ("quality_notes", models.CharField(blank=True, max_length=255)),
                ("archived", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "fabric",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="rolls",
                        to="production.fabric",
                    ),
                ),
                (
                    "batch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="rolls",
                        to="production.productionbatch",
                    ),
                ),
                (
                    "demand",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="rolls",
                        to="production.demand",
                    ),
                ),
                (
                    "reserved_for",
                    models.ForeignKey(
                        blank=True,
                        help_text="Coating order this raw roll is reserved for",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reserved_rolls",
                        to="production.productionorder",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "roll_number"],
                "indexes": [
                    models.Index(fields=["fabric", "color", "status", "created_at"], name="prod_roll_fifo_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("remaining_length__gte", 0),
                            ("remaining_length__lte", models.F("total_length")),
                        ),
                        name="roll_remaining_within_total",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="CoatingRollInput",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("quantity_used", models.DecimalField(decimal_places=2, max_digits=12)),
                ("processing_order", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "production_order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="roll_inputs",
                        to="production.productionorder",
                    ),
                ),
                (
                    "roll",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="coating_inputs",
                        to="production.roll",
                    ),
                ),
            ],
            options={
                "ordering": ["processing_order", "id"],
                "unique_together": {("production_order", "roll")},
            },
        ),
        migrations.CreateModel(
            name="RollAllocation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("manual", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "roll",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="production.roll",
                    ),
                ),
                (
                    "demand",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="production.demand",
                    ),
                ),
                (
                    "allocated_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="roll_allocations",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="StockAggregate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("color", models.CharField(blank=True, default="", max_length=50)),
                ("quantity", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "fabric",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_aggregates",
                        to="production.fabric",
                    ),
                ),
            ],
            options={
                "ordering": ["fabric_id", "color"],
                "unique_together": {("fabric", "color")},
            },
        ),
        migrations.CreateModel(
            name="StockMovement",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("color", models.CharField(blank=True, default="", max_length=50)),
                ("quantity", models.DecimalField(decimal_places=2, max_digits=12)),
                ("movement_type", models.CharField(choices=[("production_in", "Production in"), ("allocation", "Allocation"), ("return", "Return")], max_length=20)),
                ("reference_type", models.CharField(choices=[("production_order", "Production order"), ("demand", "Demand")], max_length=20)),
                ("reference_id", models.PositiveBigIntegerField()),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "fabric",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="production.fabric",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["fabric", "created_at"], name="prod_move_fabric_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="prod_move_ref_idx"),
                ],
            },
        ),
    ]
