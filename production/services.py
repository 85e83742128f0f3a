import logging
import re
from collections import defaultdict
from datetime import date, timedelta
from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Max
from django.shortcuts import get_object_or_404
from django.utils import timezone
from .calculations import (
    HeaderInputs, InvalidSubmission, TargetCalculator, VarianceEngine,
    recompute_hourly_metrics, validate_submission
)
from .models import (
    ProductionUser, QualityInspector, ProductionHeader, HourlyProduction,
    HourlyInspection, InspectionDefect
)
from .schemas import (
    ProductionHeaderIn, ProductionHeaderPatch, ProductionHeaderOut,
    HourlyMetricsSchema, VariancePointSchema, SnapshotSchema,
    HourlyInspectionBatchIn, HourlyInspectionEntryIn,
    DefectShareSchema, QualitySummarySchema,
    EfficiencyPointSchema, EfficiencyTrendSchema
)

logger = logging.getLogger(__name__)

HEADER_FIELDS = (
    'quality_inspector_id', 'operator_to', 'manpower_present', 'manpower_absent',
    'working_hour', 'plan_quantity', 'plan_efficiency', 'smv', 'today_target', 'achieve',
)

DERIVED_FIELDS = (
    'base_target_per_hour', 'dynamic_target', 'variance_qty',
    'hourly_efficiency', 'achieve_efficiency', 'total_efficiency',
)

MAX_INSPECTION_HOUR = 24
MAX_TREND_DAYS = 366


class DuplicateEntry(Exception):
    """Raised when a write clashes with an existing (owner, date, hour) record."""


class HourlyRecordStore:
    """Persistence for hourly production records, one per (header, user, hour)."""

    @staticmethod
    def list_by_header_ascending_hour(header_id: int, production_user_id: int | None = None):
        """Stored hours of a header ordered by hour number."""
        records = HourlyProduction.objects.filter(header_id=header_id)
        if production_user_id is not None:
            records = records.filter(production_user_id=production_user_id)
        return records.order_by('hour')

    @staticmethod
    def upsert(header: ProductionHeader, production_user_id: int, hour: int,
               achieved_qty: float, derived_fields: dict | None = None) -> HourlyProduction:
        """Create or overwrite the record for (header, user, hour)."""
        defaults = {'achieved_qty': achieved_qty}
        defaults.update(derived_fields or {})
        record, _ = HourlyProduction.objects.update_or_create(
            header=header,
            production_user_id=production_user_id,
            hour=hour,
            defaults=defaults
        )
        return record


class HourlyProductionService:
    """Service class for hourly production submissions."""

    @staticmethod
    def _rederive(header: ProductionHeader, production_user_id: int, from_hour: int = 1) -> list[HourlyProduction]:
        """
        Rewrite cached derived fields for stored hours >= from_hour.
        The recurrence always runs over the full stored prefix.
        """
        inputs = HeaderInputs.from_header(header)
        records = list(HourlyRecordStore.list_by_header_ascending_hour(header.id, production_user_id))
        metrics_by_hour = {
            metrics.hour: metrics
            for metrics in recompute_hourly_metrics(inputs, ((r.hour, r.achieved_qty) for r in records))
        }

        changed = []
        for record in records:
            if record.hour < from_hour:
                continue
            for field, value in metrics_by_hour[record.hour].derived_fields().items():
                setattr(record, field, value)
            changed.append(record)

        if changed:
            HourlyProduction.objects.bulk_update(changed, DERIVED_FIELDS)
        return changed

    @classmethod
    def submit_hour(cls, header_id: int, production_user_id: int, hour, achieved_qty) -> tuple[HourlyProduction, list[int]]:
        """
        Save one hour's achieved quantity and ripple the shortfall recurrence
        into every later stored hour.

        The header row is locked for the duration so concurrent submissions for
        the same header are serialized against one consistent prefix.
        """
        with transaction.atomic():
            header = get_object_or_404(ProductionHeader.objects.select_for_update(), pk=header_id)

            try:
                if header.production_user_id != production_user_id:
                    raise InvalidSubmission(["productionUser does not own this production header"])
                hour, achieved_qty = validate_submission(HeaderInputs.from_header(header), hour, achieved_qty)
            except InvalidSubmission as exc:
                logger.warning("Rejected hourly submission for header %s: %s", header_id, exc)
                raise

            HourlyRecordStore.upsert(header, production_user_id, hour, achieved_qty)
            changed = cls._rederive(header, production_user_id, from_hour=hour)

        record = next(r for r in changed if r.hour == hour)
        recomputed_hours = [r.hour for r in changed]
        logger.info(
            "Saved hour %s for header %s (achieved=%s, dynamic_target=%.2f); rederived hours %s",
            hour, header_id, achieved_qty, record.dynamic_target, recomputed_hours
        )
        return record, recomputed_hours

    @classmethod
    def recompute_header(cls, header: ProductionHeader) -> int:
        """Rebuild every stored hour of a header. Returns the number of records rewritten."""
        user_ids = (
            HourlyProduction.objects.filter(header=header)
            .values_list('production_user_id', flat=True)
            .distinct()
        )
        rewritten = 0
        for production_user_id in list(user_ids):
            rewritten += len(cls._rederive(header, production_user_id))
        logger.info("Recomputed %s hourly records for header %s", rewritten, header.id)
        return rewritten

    @staticmethod
    def list_hours(header_id: int, production_user_id: int | None = None):
        get_object_or_404(ProductionHeader, pk=header_id)
        return list(HourlyRecordStore.list_by_header_ascending_hour(header_id, production_user_id))


class ProductionHeaderService:
    """Service class for daily production headers."""

    @staticmethod
    def get_for_user_and_date(production_user_id: int, production_date: date | None = None):
        """Header for a user on a date (today by default), or None."""
        production_date = production_date or timezone.localdate()
        return ProductionHeader.objects.filter(
            production_user_id=production_user_id,
            production_date=production_date
        ).first()

    @staticmethod
    def get_by_id(header_id: int) -> ProductionHeader:
        return get_object_or_404(ProductionHeader, pk=header_id)

    @staticmethod
    def _check_inspector(quality_inspector_id: int | None) -> None:
        if quality_inspector_id is not None:
            get_object_or_404(QualityInspector, pk=quality_inspector_id)

    @staticmethod
    def _check_stored_hours(header: ProductionHeader) -> None:
        """Reject header values that would leave stored hours outside the working day."""
        last_hour = HourlyProduction.objects.filter(header=header).aggregate(last=Max('hour'))['last']
        max_hour = HeaderInputs.from_header(header).effective_working_hours
        if last_hour is not None and last_hour > max_hour:
            logger.warning(
                "Rejected change to production header %s: hour %s stored, working hours now %s",
                header.id, last_hour, max_hour
            )
            raise InvalidSubmission([f"workingHour {max_hour} is below stored hour {last_hour}"])

    @classmethod
    def upsert_header(cls, payload: ProductionHeaderIn) -> ProductionHeader:
        """Create the user's header for the date, or overwrite it in place."""
        production_user = get_object_or_404(ProductionUser, pk=payload.production_user_id)
        cls._check_inspector(payload.quality_inspector_id)
        production_date = payload.production_date or timezone.localdate()
        fields = {name: getattr(payload, name) for name in HEADER_FIELDS}

        with transaction.atomic():
            header, created = ProductionHeader.objects.update_or_create(
                production_user=production_user,
                production_date=production_date,
                defaults=fields
            )
            if not created:
                cls._check_stored_hours(header)
                HourlyProductionService.recompute_header(header)

        logger.info(
            "%s production header %s for user %s on %s",
            "Created" if created else "Updated", header.id, production_user.id, production_date
        )
        return header

    @classmethod
    def update_header(cls, header_id: int, payload: ProductionHeaderPatch) -> ProductionHeader:
        """Apply a partial update and rederive stored hours from the new constants."""
        changes = payload.model_dump(exclude_unset=True)
        if 'production_date' in changes and changes['production_date'] is None:
            # production_date cannot be cleared
            del changes['production_date']
        cls._check_inspector(changes.get('quality_inspector_id'))

        try:
            with transaction.atomic():
                header = get_object_or_404(ProductionHeader.objects.select_for_update(), pk=header_id)
                for field, value in changes.items():
                    setattr(header, field, value)
                cls._check_stored_hours(header)
                header.save()
                HourlyProductionService.recompute_header(header)
        except IntegrityError as exc:
            raise DuplicateEntry("A production header already exists for this user and date.") from exc

        logger.info("Updated production header %s fields %s", header_id, sorted(changes))
        return header

    @staticmethod
    def delete_header(header_id: int) -> None:
        header = get_object_or_404(ProductionHeader, pk=header_id)
        header.delete()
        logger.info("Deleted production header %s", header_id)


class SnapshotService:
    """Read path for dashboards and TV boards. Never trusts cached derived fields."""

    @staticmethod
    def get_current_snapshot(header_id: int) -> SnapshotSchema:
        header = get_object_or_404(ProductionHeader, pk=header_id)
        inputs = HeaderInputs.from_header(header)
        entries = HourlyRecordStore.list_by_header_ascending_hour(
            header.id, header.production_user_id
        ).values_list('hour', 'achieved_qty')

        metrics = recompute_hourly_metrics(inputs, entries)
        base = TargetCalculator.compute_base_target_per_hour(inputs)
        total_achieved = sum(m.achieved_qty for m in metrics)
        current = metrics[-1] if metrics else None
        current_hour = current.hour if current else 0

        return SnapshotSchema(
            header=ProductionHeaderOut.from_orm(header),
            base_target_per_hour=base,
            working_hours=inputs.effective_working_hours,
            current_hour=current_hour,
            total_achieved=total_achieved,
            day_target=inputs.today_target,
            net_variance=VarianceEngine.net_variance_to_date(base, current_hour, total_achieved),
            current_hourly_efficiency=current.hourly_efficiency if current else 0.0,
            average_efficiency=current.total_efficiency if current else 0.0,
            rows=[HourlyMetricsSchema(**m.to_dict()) for m in metrics],
            variance_series=[VariancePointSchema(hour=m.hour, value=m.variance_qty) for m in metrics],
        )


class HourlyInspectionService:
    """Service class for end-line quality inspection entries."""

    @staticmethod
    def resolve_hour_index(entry: HourlyInspectionEntryIn) -> int:
        """Explicit hour_index, else the leading number of a label like '3rd Hour'."""
        if entry.hour_index:
            return entry.hour_index
        match = re.match(r'^(\d+)', entry.hour_label.strip())
        return int(match.group(1)) if match else 0

    @classmethod
    def _validate_entry(cls, entry: HourlyInspectionEntryIn) -> int:
        errors = []
        hour_index = cls.resolve_hour_index(entry)
        if not entry.hour_label.strip() or not hour_index:
            errors.append("hourLabel/hourIndex is required.")
        elif not 1 <= hour_index <= MAX_INSPECTION_HOUR:
            errors.append(f"hourIndex must be between 1 and {MAX_INSPECTION_HOUR}")
        for field in ('inspected_qty', 'passed_qty', 'defective_pcs', 'after_repair'):
            if getattr(entry, field) < 0:
                errors.append(f"{field} must be a non-negative number")
        for field in ('passed_qty', 'defective_pcs'):
            if getattr(entry, field) > entry.inspected_qty:
                errors.append(f"{field} cannot exceed inspected_qty")
        if any(d.quantity < 0 for d in entry.selected_defects):
            errors.append("defect quantity must be a non-negative number")
        if errors:
            raise InvalidSubmission(errors)
        return hour_index

    @staticmethod
    def _apply_entry(inspection: HourlyInspection, entry: HourlyInspectionEntryIn, hour_index: int) -> HourlyInspection:
        defects = [d for d in entry.selected_defects if d.name.strip()]

        inspection.hour_label = entry.hour_label.strip()
        inspection.hour_index = hour_index
        inspection.inspected_qty = entry.inspected_qty
        inspection.passed_qty = entry.passed_qty
        inspection.defective_pcs = entry.defective_pcs
        inspection.after_repair = entry.after_repair
        inspection.total_defects = sum(d.quantity for d in defects)
        inspection.buyer = entry.buyer.strip()
        inspection.building = entry.building.strip()
        inspection.floor = entry.floor.strip()
        inspection.line = entry.line.strip()
        inspection.save()

        inspection.defects.all().delete()
        InspectionDefect.objects.bulk_create([
            InspectionDefect(inspection=inspection, name=d.name.strip(), quantity=d.quantity)
            for d in defects
        ])
        return inspection

    @classmethod
    def create_entries(cls, payload: HourlyInspectionBatchIn) -> list[HourlyInspection]:
        """Insert all entries or none; a repeated (inspector, date, hour) rejects the batch."""
        inspector = get_object_or_404(QualityInspector, pk=payload.inspector_id)
        report_date = payload.report_date or timezone.localdate()
        if not payload.entries:
            raise InvalidSubmission(["at least one entry is required"])
        hour_indexes = [cls._validate_entry(entry) for entry in payload.entries]

        try:
            with transaction.atomic():
                created = [
                    cls._apply_entry(
                        HourlyInspection(inspector=inspector, report_date=report_date),
                        entry, hour_index
                    )
                    for entry, hour_index in zip(payload.entries, hour_indexes)
                ]
        except IntegrityError as exc:
            raise DuplicateEntry("Duplicate entry: same inspector + date + hour already exists.") from exc

        logger.info("Created %s inspection entries for inspector %s on %s", len(created), inspector.id, report_date)
        return created

    @staticmethod
    def list_entries(inspector_id: int | None = None, report_date: date | None = None, limit: int = 200):
        limit = max(1, min(limit, settings.INSPECTION_LIST_MAX))
        entries = HourlyInspection.objects.all()
        if inspector_id is not None:
            entries = entries.filter(inspector_id=inspector_id)
        if report_date is not None:
            entries = entries.filter(report_date=report_date)
        return list(
            entries.prefetch_related('defects')
            .order_by('report_date', 'hour_index', 'created_at')[:limit]
        )

    @classmethod
    def update_entry(cls, inspection_id: int, entry: HourlyInspectionEntryIn) -> HourlyInspection:
        hour_index = cls._validate_entry(entry)
        try:
            with transaction.atomic():
                inspection = get_object_or_404(HourlyInspection.objects.select_for_update(), pk=inspection_id)
                cls._apply_entry(inspection, entry, hour_index)
        except IntegrityError as exc:
            raise DuplicateEntry("Duplicate entry: same inspector + date + hour already exists.") from exc
        logger.info("Updated inspection entry %s", inspection_id)
        return inspection

    @staticmethod
    def delete_entry(inspection_id: int) -> None:
        inspection = get_object_or_404(HourlyInspection, pk=inspection_id)
        inspection.delete()
        logger.info("Deleted inspection entry %s", inspection_id)


class QualitySummaryService:
    """Service class for the end-line quality dashboard."""

    @staticmethod
    def _ratio(numerator: int, denominator: int) -> float | None:
        if denominator <= 0:
            return None
        return numerator / denominator

    @staticmethod
    def top_defects(inspections, total_inspected: int, limit: int = 3) -> list[DefectShareSchema]:
        """Most frequent defects by quantity, with their share of inspected pieces."""
        counts: defaultdict[str, int] = defaultdict(int)
        for inspection in inspections:
            for defect in inspection.defects.all():
                counts[defect.name] += defect.quantity

        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return [
            DefectShareSchema(
                name=name,
                quantity=quantity,
                percentage=round(quantity / total_inspected * 100, 2) if total_inspected > 0 else 0.0
            )
            for name, quantity in ranked
        ]

    @classmethod
    def get_summary(cls, inspector_id: int, report_date: date | None = None) -> QualitySummarySchema:
        get_object_or_404(QualityInspector, pk=inspector_id)
        report_date = report_date or timezone.localdate()
        inspections = list(
            HourlyInspection.objects.filter(inspector_id=inspector_id, report_date=report_date)
            .prefetch_related('defects')
        )

        total_inspected = sum(i.inspected_qty for i in inspections)
        total_passed = sum(i.passed_qty for i in inspections)
        total_defective = sum(i.defective_pcs for i in inspections)
        total_defects = sum(i.total_defects for i in inspections)

        return QualitySummarySchema(
            inspector_id=inspector_id,
            report_date=report_date,
            total_inspected=total_inspected,
            total_passed=total_passed,
            total_defective_pcs=total_defective,
            total_defects=total_defects,
            rft_ratio=cls._ratio(total_passed, total_inspected),
            reject_ratio=cls._ratio(total_defective, total_inspected),
            dhu_ratio=cls._ratio(total_defects, total_inspected),
            top_defects=cls.top_defects(inspections, total_inspected),
        )


class EfficiencyTrendService:
    """Service class for the per-user daily efficiency trend."""

    @staticmethod
    def get_trend(production_user_id: int, end_date: date | None = None, days: int | None = None) -> EfficiencyTrendSchema:
        """
        Final average efficiency per production day over a trailing window.
        Days without any stored hour are omitted.
        """
        get_object_or_404(ProductionUser, pk=production_user_id)
        days = settings.EFFICIENCY_TREND_DAYS if days is None else days
        if not 1 <= days <= MAX_TREND_DAYS:
            raise InvalidSubmission([f"days must be between 1 and {MAX_TREND_DAYS}"])
        end_date = end_date or timezone.localdate()
        start_date = end_date - timedelta(days=days - 1)

        headers = (
            ProductionHeader.objects.filter(
                production_user_id=production_user_id,
                production_date__gte=start_date,
                production_date__lte=end_date
            )
            .prefetch_related('hours')
            .order_by('production_date')
        )

        points = []
        for header in headers:
            entries = [
                (record.hour, record.achieved_qty)
                for record in header.hours.all()
                if record.production_user_id == header.production_user_id
            ]
            metrics = recompute_hourly_metrics(HeaderInputs.from_header(header), entries)
            if not metrics:
                continue
            points.append(EfficiencyPointSchema(
                production_date=header.production_date,
                last_hour=metrics[-1].hour,
                average_efficiency=metrics[-1].total_efficiency
            ))

        return EfficiencyTrendSchema(
            production_user_id=production_user_id,
            start_date=start_date,
            end_date=end_date,
            points=points
        )
