"""Default agent types: identity, capabilities and model settings."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from agent_orchestrator.agents.base import Agent, RelevanceScorer
from agent_orchestrator.agents.llm_handler import llm_task_handler
from agent_orchestrator.agents.registry import HandlerRegistry
from agent_orchestrator.config import AgentDefaults
from agent_orchestrator.core.models import AgentCapability, AgentConfig, AgentType
from agent_orchestrator.services.llm_pool import LLMPool

_JSON_NOTE = "Format responses as JSON with clear priorities, figures and next actions."


@dataclass(slots=True)
class AgentSpec:
    agent_type: str
    name: str
    description: str
    system_prompt: str
    capabilities: List[AgentCapability]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def agent_config(self, defaults: AgentDefaults) -> AgentConfig:
        return AgentConfig(
            model=self.model or defaults.model,
            temperature=defaults.temperature if self.temperature is None else self.temperature,
            max_tokens=self.max_tokens or defaults.max_tokens,
            system_prompt=self.system_prompt,
        )


def _cap(name: str, description: str, required: List[str], optional: Optional[List[str]] = None) -> AgentCapability:
    return AgentCapability(name=name, description=description, required=required, optional=optional or [])


DEFAULT_AGENTS: List[AgentSpec] = [
    AgentSpec(
        agent_type=AgentType.PRODUCTION_PLANNING.value,
        name="Production Planning Agent",
        description="Plans brewing schedules, batch sequencing and capacity use",
        system_prompt=(
            "You are the production planning agent of a craft brewery. You schedule "
            "brews around tank availability, fermentation times and demand, and you "
            "flag capacity bottlenecks early. " + _JSON_NOTE
        ),
        temperature=0.3,
        capabilities=[
            _cap("optimize_brewing_schedule", "Build an optimal brewing schedule for the period.",
                 ["recipes", "equipment"], ["time_horizon", "demand_forecast"]),
            _cap("analyze_production_efficiency", "Analyse recent batches for yield and efficiency losses.",
                 ["batches"], ["period"]),
            _cap("plan_batch_sequencing", "Sequence upcoming batches to minimise changeovers and idle tanks.",
                 ["batches", "equipment"]),
            _cap("forecast_resource_needs", "Forecast ingredient, labour and utility needs for the plan.",
                 ["production_plan"], ["period"]),
            _cap("assess_capacity_utilization", "Assess how fully brewhouse and cellar capacity is used.",
                 ["equipment"], ["period"]),
        ],
    ),
    AgentSpec(
        agent_type=AgentType.INVENTORY_INTELLIGENCE.value,
        name="Inventory Intelligence Agent",
        description="Forecasts demand and keeps ingredient and packaging stock healthy",
        system_prompt=(
            "You are the inventory intelligence agent of a craft brewery. You balance "
            "stock-out risk against carrying cost for ingredients and packaging. " + _JSON_NOTE
        ),
        temperature=0.2,
        capabilities=[
            _cap("optimize_inventory_levels", "Recommend reorder points and target stock levels.",
                 ["inventory"], ["service_level"]),
            _cap("forecast_demand", "Forecast ingredient demand from production plans and sales history.",
                 ["history"], ["horizon"]),
            _cap("analyze_supplier_performance", "Score suppliers on lead time, quality and price.",
                 ["suppliers"], ["period"]),
            _cap("identify_procurement_opportunities", "Find bulk, seasonal or substitution savings.",
                 ["inventory", "suppliers"]),
            _cap("assess_stock_risks", "Identify stock-out and overstock risks across items.",
                 ["inventory"], ["riskTolerance"]),
            _cap("optimize_purchasing_timing", "Suggest when to place purchase orders.",
                 ["inventory", "price_history"]),
        ],
    ),
    AgentSpec(
        agent_type=AgentType.COMPLIANCE.value,
        name="Compliance Agent",
        description="Monitors regulatory compliance, licences and reporting duties",
        system_prompt=(
            "You are the compliance agent of a craft brewery. You track licences, "
            "excise duties, labelling rules and recalls, cite the relevant regulation "
            "and flag anything that needs immediate attention. " + _JSON_NOTE
        ),
        temperature=0.1,
        capabilities=[
            _cap("monitor_license_status", "Report licence renewal deadlines and compliance status.",
                 [], ["licenses", "notificationThresholds", "jurisdiction"]),
            _cap("assess_regulatory_compliance", "Assess compliance across all regulatory areas.",
                 ["operational_data"], ["audit_scope"]),
            _cap("generate_compliance_report", "Draft the periodic compliance report.",
                 ["period"], ["report_type"]),
            _cap("calculate_excise_taxes", "Calculate excise taxes owed for removals in the period.",
                 ["removals"], ["jurisdiction"]),
            _cap("validate_labeling_compliance", "Check a label against labelling regulations.",
                 ["label"]),
            _cap("track_regulatory_changes", "Summarise regulatory changes that affect the brewery.",
                 [], ["jurisdiction"]),
            _cap("manage_recalls", "Plan the response to a product recall.",
                 ["batch", "issue"]),
        ],
    ),
    AgentSpec(
        agent_type=AgentType.CUSTOMER_EXPERIENCE.value,
        name="Customer Experience Agent",
        description="Understands customers and improves their journey and loyalty",
        system_prompt=(
            "You are the customer experience agent of a craft brewery taproom and "
            "distribution business. You turn customer data into concrete improvements. "
            + _JSON_NOTE
        ),
        temperature=0.7,
        capabilities=[
            _cap("analyze_customer_behavior", "Segment customers and describe purchasing behaviour.",
                 ["customers"], ["period"]),
            _cap("optimize_customer_journey", "Find friction points in the customer journey.",
                 ["touchpoints"]),
            _cap("generate_personalized_recommendations", "Recommend beers for a customer.",
                 ["customer"], ["catalog"]),
            _cap("analyze_customer_feedback", "Summarise feedback themes and sentiment.",
                 ["feedback"]),
            _cap("optimize_loyalty_program", "Tune loyalty tiers and rewards.",
                 ["program", "members"]),
            _cap("plan_customer_events", "Plan taproom events for the season.",
                 ["calendar"], ["budget"]),
            _cap("assess_service_quality", "Assess service quality from reviews and metrics.",
                 ["reviews"]),
        ],
    ),
    AgentSpec(
        agent_type=AgentType.FINANCIAL_OPERATIONS.value,
        name="Financial Operations Agent",
        description="Analyses costs, profitability, cash flow and pricing",
        system_prompt=(
            "You are the financial operations agent of a craft brewery. You analyse "
            "costs, margins and cash, and you quantify every recommendation. " + _JSON_NOTE
        ),
        temperature=0.2,
        capabilities=[
            _cap("analyze_product_costs", "Break down the cost of goods for each product.",
                 ["products"], ["period"]),
            _cap("assess_profitability", "Assess profitability by product and channel.",
                 ["sales", "costs"]),
            _cap("forecast_cash_flow", "Forecast cash flow for the coming months.",
                 ["transactions"], ["horizon"]),
            _cap("optimize_pricing_strategy", "Recommend price changes by product and channel.",
                 ["products", "market"]),
            _cap("analyze_financial_performance", "Summarise financial performance for the period.",
                 [], ["period"]),
            _cap("evaluate_investment_opportunities", "Evaluate a proposed capital investment.",
                 ["proposal"]),
            _cap("manage_working_capital", "Recommend working capital improvements.",
                 ["balances"]),
        ],
    ),
]


def register_default_handlers(registry: HandlerRegistry, llm_pool: LLMPool, specs: List[AgentSpec]) -> None:
    """Register a model-backed handler for every capability of every spec."""
    for spec in specs:
        for capability in spec.capabilities:
            registry.register(spec.agent_type, capability.name, llm_task_handler(llm_pool, capability.description))


def build_agent(
    spec: AgentSpec,
    registry: HandlerRegistry,
    defaults: AgentDefaults,
    relevance_scorer: Optional[RelevanceScorer] = None,
) -> Agent:
    return Agent(
        agent_type=spec.agent_type,
        name=spec.name,
        description=spec.description,
        config=spec.agent_config(defaults),
        handlers=registry.table(spec.agent_type),
        capabilities=list(spec.capabilities),
        relevance_scorer=relevance_scorer,
    )
