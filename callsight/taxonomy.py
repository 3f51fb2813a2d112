from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

FUNNEL_STAGES: Tuple[str, ...] = (
    "TOFU",
    "MOFU",
    "BOFU",
    "POST_SALE",
    "INTERNAL",
    "VERTICAL",
)

STAGE_TOPICS: Dict[str, Tuple[str, ...]] = {
    "TOFU": (
        "industry_trend_validation",
        "problem_challenge_identification",
        "digital_transformation_modernization",
        "regulatory_compliance_challenges",
        "market_expansion",
        "thought_leadership_cocreation",
    ),
    "MOFU": (
        "product_capability_deepdive",
        "competitive_displacement",
        "integration_interoperability",
        "implementation_onboarding",
        "security_compliance_governance",
        "customization_configurability",
        "multi_product_cross_sell",
        "partner_ecosystem_solution",
        "total_cost_of_ownership",
        "pilot_to_production",
    ),
    "BOFU": (
        "roi_financial_outcomes",
        "quantified_operational_metrics",
        "executive_strategic_impact",
        "risk_mitigation_continuity",
        "deployment_speed",
        "vendor_selection_criteria",
        "procurement_experience",
    ),
    "POST_SALE": (
        "renewal_partnership_evolution",
        "upsell_cross_sell_expansion",
        "customer_success_support",
        "training_enablement_adoption",
        "community_advisory_participation",
        "co_innovation_product_feedback",
        "change_management_champion_dev",
        "scaling_across_org",
        "platform_governance_coe",
    ),
    "INTERNAL": (
        "sales_enablement",
        "lessons_learned_implementation",
        "cross_functional_collaboration",
        "voice_of_customer_product",
        "pricing_packaging_validation",
        "churn_save_winback",
        "deal_anatomy",
        "customer_health_sentiment",
        "reference_ability_development",
        "internal_process_improvement",
    ),
    "VERTICAL": (
        "industry_specific_usecase",
        "company_size_segment",
        "persona_specific_framing",
        "geographic_regional_variation",
        "regulated_vs_unregulated",
        "public_sector_government",
    ),
}

ALL_TOPICS: FrozenSet[str] = frozenset(
    topic for topics in STAGE_TOPICS.values() for topic in topics
)


@dataclass(frozen=True)
class ChunkTag:
    funnel_stage: str
    topic: str
    confidence: float


def is_valid_tag(funnel_stage: object, topic: object) -> bool:
    return funnel_stage in FUNNEL_STAGES and topic in ALL_TOPICS
