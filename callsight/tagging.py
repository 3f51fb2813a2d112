from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .llm_client import ChatCompletionClient, ChatCompletionOptions, ChatMessage
from .logging_utils import get_logger
from .rate_limiter import RateLimiter, estimate_tokens
from .store import ChunkRecord, TranscriptStore
from .tag_cache import TagCache
from .taxonomy import ChunkTag, is_valid_tag

COMPLETION_TOKEN_ALLOWANCE = 500
TAGGER_TEMPERATURE = 0.1

TAGGER_SYSTEM_PROMPT = """You are an expert B2B sales analyst. Your job is to classify transcript segments from sales and customer calls according to a sales-funnel taxonomy.

Given a transcript segment, identify ALL applicable tags. For each tag, provide:
- The funnel stage (TOFU, MOFU, BOFU, POST_SALE, INTERNAL, VERTICAL)
- The specific topic key
- A confidence score from 0.0 to 1.0

TAXONOMY REFERENCE:

**TOFU (Top of Funnel: Awareness & Education)**
- industry_trend_validation: Customer navigating macro industry shifts
- problem_challenge_identification: Day-in-the-life pain point before solution
- digital_transformation_modernization: Digital transformation journeys
- regulatory_compliance_challenges: Regulatory/compliance challenges addressed
- market_expansion: Expansion into new geographies or segments
- thought_leadership_cocreation: Joint research or insights with customer

**MOFU (Mid-Funnel: Consideration & Evaluation)**
- product_capability_deepdive: Specific feature or platform capability in action
- competitive_displacement: Migrating off a named competitor
- integration_interoperability: Integration with existing tech stacks
- implementation_onboarding: Implementation experience, time-to-value
- security_compliance_governance: Security, compliance, data governance in practice
- customization_configurability: Customization for unique workflows
- multi_product_cross_sell: Landing and expanding with multiple products
- partner_ecosystem_solution: SI, reseller, or ISV involvement
- total_cost_of_ownership: TCO and pricing model validation
- pilot_to_production: Pilot or POC to production journey

**BOFU (Bottom of Funnel: Decision & Purchase)**
- roi_financial_outcomes: ROI, cost savings, revenue generated, payback period
- quantified_operational_metrics: Efficiency gains, time saved, error reduction
- executive_strategic_impact: Board-level or C-suite strategic framing
- risk_mitigation_continuity: Risk mitigation and business continuity outcomes
- deployment_speed: Speed of deployment vs. expectations
- vendor_selection_criteria: Why they chose you over alternatives
- procurement_experience: Contract/procurement process experience

**POST_SALE (Retention, Expansion & Advocacy)**
- renewal_partnership_evolution: Renewal and long-term partnership
- upsell_cross_sell_expansion: Upsell and cross-sell over time
- customer_success_support: CS and support experience
- training_enablement_adoption: Training, enablement, adoption programs
- community_advisory_participation: Community or customer advisory board
- co_innovation_product_feedback: Customer-influenced roadmap
- change_management_champion_dev: Internal champion development
- scaling_across_org: Scaling across departments, BUs, geographies
- platform_governance_coe: Center-of-excellence buildout

**INTERNAL (Internal Audience)**
- sales_enablement: Objection handling, competitive intel, deal strategy
- lessons_learned_implementation: What went wrong and how it was fixed
- cross_functional_collaboration: Sales + CS + product + engineering stories
- voice_of_customer_product: Customer insights feeding product development
- pricing_packaging_validation: Pricing and packaging iteration
- churn_save_winback: Churn saves and win-back stories
- deal_anatomy: How the deal was sourced, structured, and closed
- customer_health_sentiment: Health and sentiment trajectory over time
- reference_ability_development: Turning customer into referenceable advocate
- internal_process_improvement: Process improvements from customer feedback

**VERTICAL (Segment Cuts)**
- industry_specific_usecase: Healthcare, finserv, manufacturing, etc.
- company_size_segment: SMB, mid-market, enterprise, strategic
- persona_specific_framing: Story framed for CTO vs CFO vs end user
- geographic_regional_variation: Geographic or regional variation
- regulated_vs_unregulated: Regulated vs. unregulated nuances
- public_sector_government: Government-specific procurement/compliance

RULES:
1. A segment can have MULTIPLE tags across different funnel stages.
2. Only tag what is clearly present; do not infer or speculate.
3. Confidence should reflect how strongly the segment evidences the topic.
4. Look especially for QUANTIFIED VALUE (numbers, percentages, dollar amounts) which signals BOFU topics.
5. Respond ONLY with valid JSON."""

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChunkTaggingResult:
    chunk_id: str
    tags: List[ChunkTag]
    cached: bool


def parse_tag_response(content: str) -> List[ChunkTag]:
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        logger.warning("tagger.invalid_json length=%s", len(content or ""))
        return []
    raw_tags = parsed.get("tags") if isinstance(parsed, dict) else None
    if not isinstance(raw_tags, list):
        return []

    tags: List[ChunkTag] = []
    for raw in raw_tags:
        if not isinstance(raw, dict):
            continue
        stage = raw.get("funnel_stage")
        topic = raw.get("topic")
        if not is_valid_tag(stage, topic):
            continue
        try:
            confidence = float(raw.get("confidence", 0.0))
        except (TypeError, ValueError):
            continue
        tags.append(ChunkTag(funnel_stage=stage, topic=topic, confidence=max(0.0, min(1.0, confidence))))
    return tags


def aggregate_call_tags(results: Sequence[ChunkTaggingResult]) -> List[ChunkTag]:
    best: Dict[Tuple[str, str], ChunkTag] = {}
    for result in results:
        for tag in result.tags:
            key = (tag.funnel_stage, tag.topic)
            existing = best.get(key)
            if existing is None or tag.confidence > existing.confidence:
                best[key] = tag
    return list(best.values())


class ChunkTagger:
    """Classifies redacted chunks against the funnel taxonomy.

    Each chunk goes cache -> rate limiter -> model; results are cached by
    chunk content so re-processing a call does not pay for the model again.
    """

    def __init__(
        self,
        store: TranscriptStore,
        rate_limiter: RateLimiter,
        cache: TagCache,
        concurrency: int = 5,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._cache = cache
        self._concurrency = max(1, int(concurrency))

    def tag_chunk(self, chunk_text: str, client: ChatCompletionClient) -> Tuple[List[ChunkTag], bool]:
        cached = self._cache.get(chunk_text)
        if cached is not None:
            return cached, True

        estimated = estimate_tokens(TAGGER_SYSTEM_PROMPT + chunk_text) + COMPLETION_TOKEN_ALLOWANCE
        self._rate_limiter.acquire(estimated)

        messages = [
            ChatMessage(role="system", content=TAGGER_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=(
                    "Classify this transcript segment. Return JSON with a \"tags\" array where "
                    "each element has \"funnel_stage\", \"topic\", and \"confidence\".\n\n"
                    f"TRANSCRIPT SEGMENT:\n\"\"\"\n{chunk_text}\n\"\"\""
                ),
            ),
        ]
        completion = client.chat_completion(
            messages,
            ChatCompletionOptions(temperature=TAGGER_TEMPERATURE, json_mode=True),
        )
        self._rate_limiter.report_usage(completion.total_tokens, estimated)
        if not completion.content:
            return [], False

        tags = parse_tag_response(completion.content)
        self._cache.set(chunk_text, tags)
        return tags, False

    def tag_chunks(
        self, chunks: Sequence[ChunkRecord], client: ChatCompletionClient
    ) -> List[ChunkTaggingResult]:
        if not chunks:
            return []

        def _tag(chunk: ChunkRecord) -> ChunkTaggingResult:
            tags, cached = self.tag_chunk(chunk.text, client)
            return ChunkTaggingResult(chunk_id=chunk.chunk_id, tags=tags, cached=cached)

        workers = min(self._concurrency, len(chunks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tagger") as pool:
            return list(pool.map(_tag, chunks))

    def tag_call_transcript(
        self, call_id: str, transcript_id: str, client: ChatCompletionClient
    ) -> List[ChunkTaggingResult]:
        chunks = self._store.list_chunks_with_tags(transcript_id)
        results = self.tag_chunks(chunks, client)
        for result in results:
            self._store.replace_chunk_tags(result.chunk_id, result.tags)
        call_tags = aggregate_call_tags(results)
        if call_tags:
            self._store.upsert_call_tags(call_id, call_tags)
        logger.info(
            "tagger.call_complete call_id=%s chunks=%s cached=%s call_tags=%s cache=%s",
            call_id,
            len(results),
            sum(1 for result in results if result.cached),
            len(call_tags),
            self._cache.stats(),
        )
        return results
