from ninja import NinjaAPI, Swagger
from datetime import date
from django.http import HttpRequest
from .calculations import InvalidSubmission
from .services import (
    DuplicateEntry, ProductionHeaderService, HourlyProductionService, SnapshotService,
    HourlyInspectionService, QualitySummaryService, EfficiencyTrendService
)
from .schemas import (
    ErrorSchema, MessageSchema,
    ProductionHeaderIn, ProductionHeaderPatch, ProductionHeaderOut, HeaderLookupSchema,
    HourlySubmissionIn, HourlySubmissionResponseSchema, HourlyProductionListSchema, SnapshotSchema,
    HourlyInspectionBatchIn, HourlyInspectionEntryIn, HourlyInspectionOut, HourlyInspectionListSchema,
    QualitySummarySchema, EfficiencyTrendSchema
)

api = NinjaAPI(docs=Swagger(settings={"persistAuthorization": True}))


@api.exception_handler(InvalidSubmission)
def invalid_submission(request: HttpRequest, exc: InvalidSubmission):
    return api.create_response(request, {"success": False, "errors": exc.errors}, status=400)


@api.exception_handler(DuplicateEntry)
def duplicate_entry(request: HttpRequest, exc: DuplicateEntry):
    return api.create_response(request, {"success": False, "errors": [str(exc)]}, status=409)


@api.get("/production-headers", response=HeaderLookupSchema)
def get_production_header(request: HttpRequest, production_user_id: int, date: date | None = None) -> HeaderLookupSchema:
    """
    Get the production header of a user for a day (today when date is omitted).
    Returns null data when the user has not saved a header for that day yet.
    """
    header = ProductionHeaderService.get_for_user_and_date(production_user_id, date)
    return HeaderLookupSchema(data=ProductionHeaderOut.from_orm(header) if header else None)


@api.post("/production-headers", response={200: ProductionHeaderOut, 400: ErrorSchema})
def upsert_production_header(request: HttpRequest, payload: ProductionHeaderIn):
    """
    Create or overwrite the header for (production user, production date).
    Stored hours are rederived when an existing header changes.
    """
    return ProductionHeaderService.upsert_header(payload)


@api.get("/production-headers/{header_id}", response=ProductionHeaderOut)
def get_production_header_by_id(request: HttpRequest, header_id: int):
    return ProductionHeaderService.get_by_id(header_id)


@api.patch("/production-headers/{header_id}", response={200: ProductionHeaderOut, 400: ErrorSchema, 409: ErrorSchema})
def update_production_header(request: HttpRequest, header_id: int, payload: ProductionHeaderPatch):
    """Partial header update; fields sent as null are cleared."""
    return ProductionHeaderService.update_header(header_id, payload)


@api.delete("/production-headers/{header_id}", response=MessageSchema)
def delete_production_header(request: HttpRequest, header_id: int) -> MessageSchema:
    ProductionHeaderService.delete_header(header_id)
    return MessageSchema(message="Production header deleted successfully")


@api.get("/production-headers/{header_id}/snapshot", response=SnapshotSchema)
def get_production_snapshot(request: HttpRequest, header_id: int) -> SnapshotSchema:
    """
    Current state of a line for dashboards and TV boards.

    Every figure is derived from the stored achieved quantities on each call,
    so callers may poll this endpoint at whatever cadence they need.
    """
    return SnapshotService.get_current_snapshot(header_id)


@api.get("/hourly-productions", response=HourlyProductionListSchema)
def list_hourly_productions(request: HttpRequest, header_id: int, production_user_id: int | None = None):
    records = HourlyProductionService.list_hours(header_id, production_user_id)
    return {"success": True, "data": records}


@api.post("/hourly-productions", response={200: HourlySubmissionResponseSchema, 400: ErrorSchema})
def submit_hourly_production(request: HttpRequest, payload: HourlySubmissionIn):
    """
    Save one hour's achieved quantity.

    Dynamic target, variance and efficiencies are derived server-side. Editing
    an earlier hour rewrites the derived fields of every later stored hour;
    their hour numbers are listed in recomputed_hours.
    """
    record, recomputed_hours = HourlyProductionService.submit_hour(
        payload.header_id, payload.production_user_id, payload.hour, payload.achieved_qty
    )
    return {
        "success": True,
        "data": record,
        "recomputed_hours": recomputed_hours,
        "message": "Hourly production record saved successfully",
    }


@api.post("/hourly-inspections", response={201: HourlyInspectionListSchema, 400: ErrorSchema, 409: ErrorSchema})
def create_hourly_inspections(request: HttpRequest, payload: HourlyInspectionBatchIn):
    """Create one or more end-line inspection hours for an inspector and day."""
    created = HourlyInspectionService.create_entries(payload)
    return 201, {"success": True, "count": len(created), "data": created}


@api.get("/hourly-inspections", response=HourlyInspectionListSchema)
def list_hourly_inspections(request: HttpRequest, inspector_id: int | None = None,
                            date: date | None = None, limit: int = 200):
    entries = HourlyInspectionService.list_entries(inspector_id, date, limit)
    return {"success": True, "count": len(entries), "data": entries}


@api.patch("/hourly-inspections/{inspection_id}", response={200: HourlyInspectionOut, 400: ErrorSchema, 409: ErrorSchema})
def update_hourly_inspection(request: HttpRequest, inspection_id: int, payload: HourlyInspectionEntryIn):
    return HourlyInspectionService.update_entry(inspection_id, payload)


@api.delete("/hourly-inspections/{inspection_id}", response=MessageSchema)
def delete_hourly_inspection(request: HttpRequest, inspection_id: int) -> MessageSchema:
    HourlyInspectionService.delete_entry(inspection_id)
    return MessageSchema(message="Entry deleted successfully")


@api.get("/quality-summary", response=QualitySummarySchema)
def get_quality_summary(request: HttpRequest, inspector_id: int, date: date | None = None) -> QualitySummarySchema:
    """
    Day KPIs for one inspector.

    - rft_ratio: passed / inspected
    - reject_ratio: defective pieces / inspected
    - dhu_ratio: defects / inspected
    - top_defects: three most frequent defects with their share of inspected pieces
    """
    return QualitySummaryService.get_summary(inspector_id, date)


@api.get("/efficiency-trend", response={200: EfficiencyTrendSchema, 400: ErrorSchema})
def get_efficiency_trend(request: HttpRequest, production_user_id: int, end_date: date | None = None,
                         days: int | None = None):
    """Final average efficiency of each production day in the trailing window ending at end_date."""
    return EfficiencyTrendService.get_trend(production_user_id, end_date, days)
