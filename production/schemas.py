from datetime import date
from typing import Optional
from ninja import Field, Schema


class ErrorSchema(Schema):
    """Rejected request body or parameters."""
    success: bool = False
    errors: list[str]


class MessageSchema(Schema):
    success: bool = True
    message: str


class ProductionHeaderIn(Schema):
    """Header upsert payload. Everything but the production user may be left blank."""
    production_user_id: int
    production_date: Optional[date] = None  # defaults to today
    quality_inspector_id: Optional[int] = None
    operator_to: Optional[int] = Field(None, ge=0)
    manpower_present: Optional[int] = Field(None, ge=0)
    manpower_absent: Optional[int] = Field(None, ge=0)
    working_hour: Optional[int] = Field(None, ge=0)
    plan_quantity: Optional[float] = None
    plan_efficiency: Optional[float] = None
    smv: Optional[float] = None
    today_target: Optional[float] = None
    achieve: Optional[float] = None


class ProductionHeaderPatch(Schema):
    """Partial header update. An explicit null clears the field."""
    production_date: Optional[date] = None
    quality_inspector_id: Optional[int] = None
    operator_to: Optional[int] = Field(None, ge=0)
    manpower_present: Optional[int] = Field(None, ge=0)
    manpower_absent: Optional[int] = Field(None, ge=0)
    working_hour: Optional[int] = Field(None, ge=0)
    plan_quantity: Optional[float] = None
    plan_efficiency: Optional[float] = None
    smv: Optional[float] = None
    today_target: Optional[float] = None
    achieve: Optional[float] = None


class ProductionHeaderOut(Schema):
    id: int
    production_user_id: int
    production_date: date
    quality_inspector_id: Optional[int] = None
    operator_to: Optional[int] = None
    manpower_present: Optional[int] = None
    manpower_absent: Optional[int] = None
    working_hour: Optional[int] = None
    plan_quantity: Optional[float] = None
    plan_efficiency: Optional[float] = None
    smv: Optional[float] = None
    today_target: Optional[float] = None
    achieve: Optional[float] = None


class HeaderLookupSchema(Schema):
    """Header for a user/date, or null when none was saved yet."""
    data: Optional[ProductionHeaderOut] = None


class HourlySubmissionIn(Schema):
    """One hour's achieved output for a header."""
    header_id: int
    production_user_id: int
    hour: int
    achieved_qty: float


class HourlyProductionOut(Schema):
    id: int
    header_id: int
    production_user_id: int
    hour: int
    achieved_qty: float
    base_target_per_hour: float
    dynamic_target: float
    variance_qty: float
    hourly_efficiency: float
    achieve_efficiency: float
    total_efficiency: float


class HourlySubmissionResponseSchema(Schema):
    success: bool = True
    data: HourlyProductionOut
    recomputed_hours: list[int]  # stored hours whose derived fields were rewritten
    message: str


class HourlyProductionListSchema(Schema):
    success: bool = True
    data: list[HourlyProductionOut]


class HourlyMetricsSchema(Schema):
    """Freshly derived figures for one hour (not read from the cache)."""
    hour: int
    achieved_qty: float
    base_target_per_hour: float
    shortfall: float
    dynamic_target: float
    variance_qty: float
    hourly_efficiency: float
    achieve_efficiency: float
    total_efficiency: float


class VariancePointSchema(Schema):
    hour: int
    value: float


class SnapshotSchema(Schema):
    """Live view of one header, recomputed from stored quantities on every request."""
    header: ProductionHeaderOut
    base_target_per_hour: float
    working_hours: int
    current_hour: int
    total_achieved: float
    day_target: float
    net_variance: float
    current_hourly_efficiency: float
    average_efficiency: float
    rows: list[HourlyMetricsSchema]
    variance_series: list[VariancePointSchema]


class DefectItemSchema(Schema):
    name: str
    quantity: int = 0


class HourlyInspectionEntryIn(Schema):
    """Single end-line inspection hour. hour_index falls back to the leading number of hour_label."""
    hour_label: str
    hour_index: Optional[int] = None
    inspected_qty: int = 0
    passed_qty: int = 0
    defective_pcs: int = 0
    after_repair: int = 0
    selected_defects: list[DefectItemSchema] = []
    buyer: str = ""
    building: str = ""
    floor: str = ""
    line: str = ""


class HourlyInspectionBatchIn(Schema):
    inspector_id: int
    report_date: Optional[date] = None  # defaults to today
    entries: list[HourlyInspectionEntryIn]


class HourlyInspectionOut(Schema):
    id: int
    inspector_id: int
    report_date: date
    hour_label: str
    hour_index: int
    inspected_qty: int
    passed_qty: int
    defective_pcs: int
    after_repair: int
    total_defects: int
    buyer: str
    building: str
    floor: str
    line: str
    selected_defects: list[DefectItemSchema]

    @staticmethod
    def resolve_selected_defects(obj):
        return [{"name": d.name, "quantity": d.quantity} for d in obj.defects.all()]


class HourlyInspectionListSchema(Schema):
    success: bool = True
    count: int
    data: list[HourlyInspectionOut]


class DefectShareSchema(Schema):
    name: str
    quantity: int
    percentage: float  # share of inspected pieces, 0 when nothing inspected


class QualitySummarySchema(Schema):
    """Day totals and ratios for one inspector. Ratios are null when nothing was inspected."""
    inspector_id: int
    report_date: date
    total_inspected: int
    total_passed: int
    total_defective_pcs: int
    total_defects: int
    rft_ratio: Optional[float] = None
    reject_ratio: Optional[float] = None
    dhu_ratio: Optional[float] = None
    top_defects: list[DefectShareSchema]


class EfficiencyPointSchema(Schema):
    production_date: date
    last_hour: int
    average_efficiency: float


class EfficiencyTrendSchema(Schema):
    production_user_id: int
    start_date: date
    end_date: date
    points: list[EfficiencyPointSchema]
