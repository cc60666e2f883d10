"""
Domain types for business-plan sections.
Single source of truth for the extraction prompt template, record validation, and API.

Each section has an explicit record model. Stored JSON uses camelCase keys;
fields the model does not know are preserved untyped.
"""

from dataclasses import dataclass
from typing import Any, Optional, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# -----------------------------------------------------------------------------
# 1. Base record
# -----------------------------------------------------------------------------


def _is_list_annotation(annotation: Any) -> bool:
    if get_origin(annotation) is list:
        return True
    return any(get_origin(a) is list for a in get_args(annotation))


def _coerce_text(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        # e.g. {"name": "Monthly revenue", "target": "10k"} -> "name: Monthly revenue; target: 10k"
        return "; ".join(f"{k}: {v}" for k, v in value.items() if v not in (None, "", []))
    return value


class SectionRecord(BaseModel):
    """Structured distillation of one business-plan section."""

    model_config = ConfigDict(
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _coerce_llm_shapes(cls, data: Any) -> Any:
        """LLMs return a bare string for list fields and numbers for text fields; normalize both."""
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for name, field in cls.model_fields.items():
            key = field.alias if field.alias in out else name
            if key not in out or out[key] is None:
                continue
            value = out[key]
            if _is_list_annotation(field.annotation):
                if isinstance(value, (str, int, float, dict)):
                    value = [value]
                if isinstance(value, list):
                    value = [_coerce_text(v) for v in value]
                    value = [v for v in value if not (isinstance(v, str) and not v.strip())]
            else:
                value = _coerce_text(value)
            out[key] = value
        return out

    @classmethod
    def resolve_field(cls, field_id: str) -> tuple[str, bool]:
        """(stored camelCase key, is a list field) for a field name or alias. Unknown ids pass through as text."""
        for name, field in cls.model_fields.items():
            if field_id in (name, field.alias):
                return field.alias or name, _is_list_annotation(field.annotation)
        return field_id, False

    @classmethod
    def field_template(cls) -> dict[str, Any]:
        """camelCase key -> description (wrapped in a list for list fields), for the extraction prompt."""
        template: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            key = field.alias or name
            desc = field.description or name.replace("_", " ")
            template[key] = [desc] if _is_list_annotation(field.annotation) else desc
        return template

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# -----------------------------------------------------------------------------
# 2. Section records
# -----------------------------------------------------------------------------


class CompanyOverviewRecord(SectionRecord):
    business_name: Optional[str] = Field(None, description="Name of the business")
    founding_story: Optional[str] = Field(None, description="How and why the business was started")
    current_stage: Optional[str] = Field(None, description="Current stage (idea, startup, growth, established)")
    core_activities: Optional[list[str]] = Field(None, description="Main activities of the business")
    key_milestones: Optional[list[str]] = Field(None, description="Milestones reached or planned")
    business_model: Optional[str] = Field(None, description="How the business makes money")


class MissionStatementRecord(SectionRecord):
    mission_statement: Optional[str] = Field(None, description="The mission statement")
    vision: Optional[str] = Field(None, description="Vision of what the business wants to become")
    core_values: Optional[list[str]] = Field(None, description="Core values")
    purpose: Optional[str] = Field(None, description="Why the business exists")


class VisionRecord(SectionRecord):
    long_term_vision: Optional[str] = Field(None, description="Long-term vision for the business")
    year_one_goals: Optional[list[str]] = Field(None, description="Goals for the first year")
    year_three_goals: Optional[list[str]] = Field(None, description="Goals for year three")
    year_five_goals: Optional[list[str]] = Field(None, description="Goals for year five")
    alignment_explanation: Optional[str] = Field(None, description="How the goals align with the vision")


class ProductsRecord(SectionRecord):
    product_description: Optional[str] = Field(None, description="Overall description of the products or services offered")
    unique_selling_points: Optional[list[str]] = Field(None, description="Unique selling points")
    competitive_advantages: Optional[list[str]] = Field(None, description="Competitive advantages")
    pricing_strategy: Optional[str] = Field(None, description="Pricing strategy")
    future_product_plans: Optional[str] = Field(None, description="Future product development or service expansion plans")


class DistributionRecord(SectionRecord):
    distribution_channels: Optional[list[str]] = Field(None, description="Channels used to reach customers")
    primary_channel: Optional[str] = Field(None, description="Most important channel")
    channel_strategy: Optional[str] = Field(None, description="How the channels work together")
    logistics_approach: Optional[str] = Field(None, description="Shipping, delivery and fulfilment approach")
    partnership_strategy: Optional[str] = Field(None, description="Distribution partners and terms")
    cost_structure: Optional[str] = Field(None, description="Costs of distribution")
    innovative_approaches: Optional[list[str]] = Field(None, description="New or unusual distribution ideas")


class LegalStructureRecord(SectionRecord):
    structure_type: Optional[str] = Field(None, description="Legal structure (LLC, sole proprietorship, corporation, ...)")
    rationale: Optional[str] = Field(None, description="Why this structure was chosen")
    ownership_details: Optional[str] = Field(None, description="Owners and ownership split")
    tax_implications: Optional[str] = Field(None, description="Tax consequences of the structure")
    legal_requirements: Optional[list[str]] = Field(None, description="Licenses, permits and filings needed")
    future_plans: Optional[str] = Field(None, description="Planned changes to the structure")


class LocationFacilitiesRecord(SectionRecord):
    location_type: Optional[str] = Field(None, description="Type of location (home-based, retail, office, online, ...)")
    location_details: Optional[str] = Field(None, description="Where the business operates")
    facilities: Optional[str] = Field(None, description="Facilities and space used")
    location_rationale: Optional[str] = Field(None, description="Why this location")
    regulatory_requirements: Optional[str] = Field(None, description="Zoning, permits and other location rules")
    expansion_plans: Optional[str] = Field(None, description="Plans for new or larger locations")


class MarketPositioningRecord(SectionRecord):
    target_market: Optional[str] = Field(None, description="Primary target market")
    customer_segments: Optional[list[str]] = Field(None, description="Customer segments")
    competitive_landscape: Optional[str] = Field(None, description="Main competitors and how they compete")
    positioning_statement: Optional[str] = Field(None, description="Positioning statement")
    unique_value_proposition: Optional[str] = Field(None, description="Unique value proposition")
    differentiators: Optional[list[str]] = Field(None, description="What sets the business apart")


class PricingRecord(SectionRecord):
    pricing_model: Optional[str] = Field(None, description="Pricing model (cost-plus, value-based, subscription, ...)")
    price_points: Optional[list[str]] = Field(None, description="Prices for products or tiers")
    pricing_rationale: Optional[str] = Field(None, description="Why these prices")
    discount_strategy: Optional[str] = Field(None, description="Discounts, promotions and bundles")
    competitor_pricing: Optional[str] = Field(None, description="How prices compare with competitors")


class PromotionalActivitiesRecord(SectionRecord):
    promotional_channels: Optional[list[str]] = Field(None, description="Marketing and promotion channels")
    key_messages: Optional[list[str]] = Field(None, description="Key marketing messages")
    campaigns: Optional[list[str]] = Field(None, description="Planned campaigns")
    marketing_budget: Optional[str] = Field(None, description="Marketing budget")
    success_metrics: Optional[list[str]] = Field(None, description="How promotion success is measured")


class SalesStrategyRecord(SectionRecord):
    sales_channels: Optional[list[str]] = Field(None, description="Where and how sales happen")
    sales_process: Optional[str] = Field(None, description="Steps from lead to closed sale")
    sales_targets: Optional[list[str]] = Field(None, description="Sales targets")
    sales_team: Optional[str] = Field(None, description="Who sells and how they are organized")
    customer_retention: Optional[str] = Field(None, description="How customers are kept")


class ProductionRecord(SectionRecord):
    process_overview: Optional[str] = Field(None, description="Overview of the production or service delivery process")
    process_steps: Optional[list[str]] = Field(None, description="Steps of the process")
    equipment_and_technology: Optional[str] = Field(None, description="Equipment and technology used")
    production_timeline: Optional[str] = Field(None, description="Production timeline")
    capacity_management: Optional[str] = Field(None, description="How capacity is planned and managed")
    outsourcing_strategy: Optional[str] = Field(None, description="What is outsourced and to whom")
    production_costs: Optional[str] = Field(None, description="Production costs")


class QualityControlRecord(SectionRecord):
    quality_approach: Optional[str] = Field(None, description="Overall approach to quality")
    quality_standards: Optional[list[str]] = Field(None, description="Standards or certifications followed")
    quality_procedures: Optional[str] = Field(None, description="Quality procedures")
    testing_methods: Optional[str] = Field(None, description="Testing and inspection methods")
    feedback_mechanisms: Optional[str] = Field(None, description="How customer feedback is collected")
    continuous_improvement: Optional[str] = Field(None, description="Continuous improvement process")
    quality_metrics: Optional[str] = Field(None, description="Quality metrics")


class InventoryRecord(SectionRecord):
    inventory_approach: Optional[str] = Field(None, description="Overall inventory approach")
    tracking_systems: Optional[str] = Field(None, description="How inventory is tracked")
    storage_solutions: Optional[str] = Field(None, description="Where and how stock is stored")
    reorder_policies: Optional[str] = Field(None, description="When and how stock is reordered")
    supplier_management: Optional[str] = Field(None, description="Supplier relationships")
    inventory_turnover: Optional[str] = Field(None, description="Inventory turnover targets")
    seasonal_considerations: Optional[str] = Field(None, description="Seasonal stock changes")


class KpiRecord(SectionRecord):
    financial_kpis: Optional[list[str]] = Field(None, alias="financialKPIs", description="Financial KPIs")
    operational_kpis: Optional[list[str]] = Field(None, alias="operationalKPIs", description="Operational KPIs")
    customer_kpis: Optional[list[str]] = Field(None, alias="customerKPIs", description="Customer KPIs")
    employee_kpis: Optional[list[str]] = Field(None, alias="employeeKPIs", description="Employee KPIs")
    marketing_kpis: Optional[list[str]] = Field(None, alias="marketingKPIs", description="Marketing KPIs")
    measurement_frequency: Optional[str] = Field(None, description="How often KPIs are measured")
    reporting_methods: Optional[str] = Field(None, description="How KPIs are reported")
    benchmarks: Optional[str] = Field(None, description="Benchmarks and targets")
    responsible_parties: Optional[str] = Field(None, description="Who owns each KPI")
    improvement_process: Optional[str] = Field(None, description="What happens when a KPI misses target")


class TechnologyRecord(SectionRecord):
    software_systems: Optional[list[str]] = Field(None, description="Software systems used")
    hardware_requirements: Optional[list[str]] = Field(None, description="Hardware needed")
    data_management: Optional[str] = Field(None, description="How data is stored and managed")
    cybersecurity: Optional[str] = Field(None, description="Security measures")
    tech_support: Optional[str] = Field(None, description="Technical support arrangements")
    future_upgrades: Optional[str] = Field(None, description="Planned technology upgrades")
    integrations: Optional[list[str]] = Field(None, description="Integrations between systems")
    training_needs: Optional[str] = Field(None, description="Technology training needs")
    disaster_recovery: Optional[str] = Field(None, description="Backup and disaster recovery")
    tech_budget: Optional[str] = Field(None, description="Technology budget")


# -----------------------------------------------------------------------------
# 3. Section registry
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SectionSchema:
    id: str
    title: str
    storage_path: tuple[str, ...]
    model: type[SectionRecord]
    focus: str

    @property
    def storage_key(self) -> str:
        return ".".join(self.storage_path)


SECTIONS: dict[str, SectionSchema] = {
    s.id: s
    for s in (
        SectionSchema(
            "company-overview", "Company Overview", ("companyOverview",), CompanyOverviewRecord,
            "the business name, how it started, its current stage, core activities, milestones and business model",
        ),
        SectionSchema(
            "mission-statement", "Mission Statement", ("missionStatement",), MissionStatementRecord,
            "a clear mission statement, the vision, core values and purpose of the business",
        ),
        SectionSchema(
            "vision", "Vision & Goals", ("vision",), VisionRecord,
            "the long-term vision and concrete goals for years one, three and five",
        ),
        SectionSchema(
            "products", "Products & Services", ("products",), ProductsRecord,
            "products and services, their unique selling points, competitive advantages, pricing and future plans",
        ),
        SectionSchema(
            "distribution", "Distribution", ("distribution",), DistributionRecord,
            "distribution channels, logistics, partnerships and distribution costs",
        ),
        SectionSchema(
            "legal-structure", "Legal Structure", ("legalStructure",), LegalStructureRecord,
            "the legal structure, the reasons for it, ownership, tax implications and legal requirements",
        ),
        SectionSchema(
            "location-facilities", "Location & Facilities", ("locationFacilities",), LocationFacilitiesRecord,
            "where the business operates, its facilities, regulatory requirements and expansion plans",
        ),
        SectionSchema(
            "market-positioning", "Market Positioning", ("marketingPlan", "positioning"), MarketPositioningRecord,
            "the target market, customer segments, competitors and the positioning of the business",
        ),
        SectionSchema(
            "pricing", "Pricing Strategy", ("marketingPlan", "pricing"), PricingRecord,
            "the pricing model, price points, the rationale behind them and discounts",
        ),
        SectionSchema(
            "promotional-activities", "Promotional Activities", ("marketingPlan", "promotional"),
            PromotionalActivitiesRecord,
            "promotion channels, key messages, campaigns, marketing budget and success metrics",
        ),
        SectionSchema(
            "sales-strategy", "Sales Strategy", ("marketingPlan", "sales"), SalesStrategyRecord,
            "sales channels, the sales process, targets, the sales team and customer retention",
        ),
        SectionSchema(
            "production", "Production", ("operations", "productionData"), ProductionRecord,
            "how products are made or services delivered, equipment, timelines, capacity and costs",
        ),
        SectionSchema(
            "quality-control", "Quality Control", ("operations", "qualityControlData"), QualityControlRecord,
            "quality standards, procedures, testing, feedback and continuous improvement",
        ),
        SectionSchema(
            "inventory", "Inventory", ("operations", "inventoryData"), InventoryRecord,
            "inventory tracking, storage, reordering, suppliers and seasonal changes",
        ),
        SectionSchema(
            "kpis", "Key Performance Indicators", ("operations", "kpiData"), KpiRecord,
            "financial, operational, customer, employee and marketing KPIs and how they are measured",
        ),
        SectionSchema(
            "technology", "Technology", ("operations", "technologyData"), TechnologyRecord,
            "software, hardware, data management, security, support and technology budget",
        ),
    )
}


def get_section(section_id: str) -> Optional[SectionSchema]:
    return SECTIONS.get(section_id)
