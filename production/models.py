from django.db import models

class ProductionUser(models.Model):
    id    = models.BigAutoField(primary_key=True)
    name  = models.CharField(max_length=100, unique=True)
    phone = models.CharField(max_length=30, blank=True, default="")
    bio   = models.CharField(max_length=255, blank=True, default="")

class QualityInspector(models.Model):
    id    = models.BigAutoField(primary_key=True)
    name  = models.CharField(max_length=100, unique=True)
    phone = models.CharField(max_length=30, blank=True, default="")
    bio   = models.CharField(max_length=255, blank=True, default="")

class ProductionHeader(models.Model):
    # All planning figures are optional; blanks default to 0 in calculations.
    id                = models.BigAutoField(primary_key=True)
    production_user   = models.ForeignKey(
        ProductionUser,
        on_delete=models.CASCADE,
        related_name="headers"
    )
    production_date   = models.DateField()
    operator_to       = models.PositiveIntegerField(null=True, blank=True)
    manpower_present  = models.PositiveIntegerField(null=True, blank=True)
    manpower_absent   = models.PositiveIntegerField(null=True, blank=True)
    working_hour      = models.PositiveSmallIntegerField(null=True, blank=True)
    plan_quantity     = models.FloatField(null=True, blank=True)
    plan_efficiency   = models.FloatField(null=True, blank=True)
    smv               = models.FloatField(null=True, blank=True)
    today_target      = models.FloatField(null=True, blank=True)
    achieve           = models.FloatField(null=True, blank=True)
    quality_inspector = models.ForeignKey(
        QualityInspector,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="headers"
    )
    created_at        = models.DateTimeField(auto_now_add=True)
    updated_at        = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("production_user", "production_date")
        indexes = [
            models.Index(fields=["production_date"]),
        ]

class HourlyProduction(models.Model):
    # Derived fields are a cache; they are always recomputable from the
    # header and the achieved quantities of hours up to this one.
    id                   = models.BigAutoField(primary_key=True)
    header               = models.ForeignKey(
        ProductionHeader,
        on_delete=models.CASCADE,
        related_name="hours"
    )
    production_user      = models.ForeignKey(
        ProductionUser,
        on_delete=models.CASCADE,
        related_name="hourly_productions"
    )
    hour                 = models.PositiveSmallIntegerField()
    achieved_qty         = models.FloatField()
    base_target_per_hour = models.FloatField(default=0)
    dynamic_target       = models.FloatField(default=0)
    variance_qty         = models.FloatField(default=0)
    hourly_efficiency    = models.FloatField(default=0)
    achieve_efficiency   = models.FloatField(default=0)
    total_efficiency     = models.FloatField(default=0)
    created_at           = models.DateTimeField(auto_now_add=True)
    updated_at           = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("header", "production_user", "hour")
        ordering = ["hour"]
        indexes = [
            models.Index(fields=["header", "hour"]),
        ]

class HourlyInspection(models.Model):
    id            = models.BigAutoField(primary_key=True)
    inspector     = models.ForeignKey(
        QualityInspector,
        on_delete=models.CASCADE,
        related_name="inspections"
    )
    report_date   = models.DateField(db_index=True)
    hour_label    = models.CharField(max_length=30)
    hour_index    = models.PositiveSmallIntegerField()
    inspected_qty = models.PositiveIntegerField(default=0)
    passed_qty    = models.PositiveIntegerField(default=0)
    defective_pcs = models.PositiveIntegerField(default=0)
    after_repair  = models.PositiveIntegerField(default=0)
    total_defects = models.PositiveIntegerField(default=0)
    buyer         = models.CharField(max_length=100, blank=True, default="")
    building      = models.CharField(max_length=100, blank=True, default="")
    floor         = models.CharField(max_length=100, blank=True, default="")
    line          = models.CharField(max_length=100, blank=True, default="")
    created_at    = models.DateTimeField(auto_now_add=True)
    updated_at    = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("inspector", "report_date", "hour_index")
        indexes = [
            models.Index(fields=["inspector", "report_date"]),
        ]

class InspectionDefect(models.Model):
    id         = models.BigAutoField(primary_key=True)
    inspection = models.ForeignKey(
        HourlyInspection,
        on_delete=models.CASCADE,
        related_name="defects"
    )
    name       = models.CharField(max_length=100)
    quantity   = models.PositiveIntegerField(default=0)
