"""Model-backed investment analysis of a single repository."""
import json
import re
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, Field, ValidationError

from common.logging import LoggingManager
from ghintel.errors import ModelResponseError

logger = LoggingManager.get_logger('ghintel.analysis')

README_CHARS = 5000
ENHANCED_README_CHARS = 10000
JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class AnalysisScores(BaseModel):
    investment: float = Field(ge=0, le=100)
    innovation: float = Field(ge=0, le=100)
    team: float = Field(ge=0, le=100)
    market: float = Field(ge=0, le=100)
    technical_moat: Optional[float] = Field(default=None, ge=0, le=100)
    scalability: Optional[float] = Field(default=None, ge=0, le=100)
    developer_adoption: Optional[float] = Field(default=None, ge=0, le=100)


class AnalysisPayload(BaseModel):
    """Structure the model is asked to answer with."""
    scores: AnalysisScores
    recommendation: Literal["strong-buy", "buy", "watch", "pass"]
    summary: str = Field(min_length=1)
    strengths: List[str]
    risks: List[str]
    questions: List[str]
    growth_prediction: Optional[str] = None
    investment_thesis: Optional[str] = None
    competitive_analysis: Optional[str] = None


@dataclass(frozen=True)
class ModelProfile:
    role: str  # "high", "medium" or "low"
    name: str
    input_price: float  # USD per million tokens
    output_price: float
    max_tokens: int
    enhanced: bool = False

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * self.input_price + output_tokens * self.output_price) / 1_000_000


def model_profiles_from_config(config) -> Dict[str, ModelProfile]:
    names = {"high": config.claude_model_high, "medium": config.claude_model_medium, "low": config.claude_model_low}
    return {
        role: ModelProfile(
            role=role,
            name=name,
            input_price=config.model_pricing[role][0],
            output_price=config.model_pricing[role][1],
            max_tokens=config.model_max_tokens[role],
            enhanced=config.claude_enhanced_analysis and role != "low",
        )
        for role, name in names.items()
    }


@dataclass
class AnalysisResult:
    payload: AnalysisPayload
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    raw_response: str

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_record(self) -> Dict[str, Any]:
        """Column values for an Analysis row."""
        scores = self.payload.scores
        return {
            "investment_score": scores.investment,
            "innovation_score": scores.innovation,
            "team_score": scores.team,
            "market_score": scores.market,
            "technical_moat_score": scores.technical_moat,
            "scalability_score": scores.scalability,
            "developer_adoption_score": scores.developer_adoption,
            "recommendation": self.payload.recommendation,
            "summary": self.payload.summary,
            "strengths": self.payload.strengths,
            "risks": self.payload.risks,
            "questions": self.payload.questions,
            "growth_prediction": self.payload.growth_prediction,
            "investment_thesis": self.payload.investment_thesis,
            "competitive_analysis": self.payload.competitive_analysis,
            "model": self.model,
            "cost_usd": self.cost_usd,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "tokens_used": self.tokens_used,
        }


def _field(repository, name, default=None):
    if isinstance(repository, dict):
        return repository.get(name, default)
    return getattr(repository, name, default)


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def parse_response(raw: str) -> AnalysisPayload:
    """Extract and validate the JSON object in a model response.

    Raises:
        ModelResponseError: The response holds no JSON object, the JSON is
            malformed, or required fields are missing or out of range.
    """
    match = JSON_OBJECT_RE.search(raw or "")
    if not match:
        raise ModelResponseError("No JSON object found in model response", raw)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ModelResponseError(f"Model response is not valid JSON: {e}", raw) from e
    try:
        return AnalysisPayload.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ModelResponseError(f"Model response failed validation ({fields})", raw) from e


class AnalysisRequester:
    """Builds prompts, calls Claude, validates the answer and prices the call."""

    def __init__(self, claude_client, models: Dict[str, ModelProfile],
                 high_threshold: float = 70.0, medium_threshold: float = 50.0,
                 escalation_velocity: float = 50.0):
        self.claude_client = claude_client
        self.models = models
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold
        self.escalation_velocity = escalation_velocity

    @classmethod
    def from_config(cls, claude_client, config) -> "AnalysisRequester":
        return cls(
            claude_client,
            model_profiles_from_config(config),
            high_threshold=config.model_high_threshold,
            medium_threshold=config.model_medium_threshold,
            escalation_velocity=config.model_escalation_velocity,
        )

    def select_model(self, composite_score: float, growth_velocity: float = 0.0) -> ModelProfile:
        """Pick the model tier; rapid growth escalates straight to the most capable model."""
        if composite_score >= self.high_threshold or growth_velocity >= self.escalation_velocity:
            return self.models["high"]
        if composite_score >= self.medium_threshold:
            return self.models["medium"]
        return self.models["low"]

    def build_prompt(self, repository, readme_text: Optional[str], enhanced: bool = False) -> str:
        readme = readme_text or ""
        topics = ", ".join(_field(repository, "topics") or []) or "None"
        header = (
            f"Repository: {_field(repository, 'full_name')}\n"
            f"Stars: {_field(repository, 'stars')} | Forks: {_field(repository, 'forks')} | "
            f"Language: {_field(repository, 'language') or 'N/A'}\n"
            f"Created: {_field(repository, 'created_at')} | Updated: {_field(repository, 'updated_at')}"
        )
        if not enhanced:
            return (
                "You are a venture capital analyst specializing in AI/ML investments. "
                "Analyze this GitHub repository:\n\n"
                f"{header}\n"
                f"Topics: {topics}\n"
                f"Description: {_field(repository, 'description') or 'No description'}\n\n"
                f"README (first {README_CHARS} chars):\n{_truncate(readme, README_CHARS)}\n\n"
                "Provide ONLY a valid JSON response with this exact structure (no additional text before or after):\n"
                "{\n"
                '  "scores": {\n'
                '    "investment": <0-100>,\n'
                '    "innovation": <0-100>,\n'
                '    "team": <0-100>,\n'
                '    "market": <0-100>\n'
                "  },\n"
                '  "recommendation": "<strong-buy|buy|watch|pass>",\n'
                '  "summary": "<2-3 paragraph executive summary>",\n'
                '  "strengths": ["<key strength 1>", "<key strength 2>", ...],\n'
                '  "risks": ["<risk 1>", "<risk 2>", ...],\n'
                '  "questions": ["<due diligence question 1>", "<question 2>", ...]\n'
                "}\n\n"
                "Important: Ensure all string values are properly escaped for JSON. Focus on: technical "
                "innovation, team quality, market opportunity, scalability, and competitive advantages.\n"
                "Be critical - only exceptional projects should score above 80."
            )
        return (
            "You are a senior venture capital partner at a top-tier AI/ML investment firm. "
            "Perform a comprehensive deep-dive analysis of this GitHub repository:\n\n"
            f"{header} | Last Push: {_field(repository, 'pushed_at')}\n"
            f"Topics: {topics}\n"
            f"Description: {_field(repository, 'description') or 'No description'}\n"
            f"Open Issues: {_field(repository, 'open_issues')} | "
            f"Default Branch: {_field(repository, 'default_branch')}\n\n"
            f"README (first {ENHANCED_README_CHARS} chars):\n{_truncate(readme, ENHANCED_README_CHARS)}\n\n"
            "Provide a comprehensive investment analysis as a valid JSON response with this exact structure:\n"
            "{\n"
            '  "scores": {\n'
            '    "investment": <0-100>,\n'
            '    "innovation": <0-100>,\n'
            '    "team": <0-100>,\n'
            '    "market": <0-100>,\n'
            '    "technical_moat": <0-100>,\n'
            '    "scalability": <0-100>,\n'
            '    "developer_adoption": <0-100>\n'
            "  },\n"
            '  "recommendation": "<strong-buy|buy|watch|pass>",\n'
            '  "summary": "<3-4 paragraph executive summary with key insights>",\n'
            '  "strengths": ["<detailed strength 1>", "<detailed strength 2>", ...],\n'
            '  "risks": ["<detailed risk 1>", "<detailed risk 2>", ...],\n'
            '  "questions": ["<strategic due diligence question 1>", "<question 2>", ...],\n'
            '  "growth_prediction": "<6-12 month growth trajectory prediction with reasoning>",\n'
            '  "investment_thesis": "<2-3 paragraph investment thesis if recommendation is buy/strong-buy>",\n'
            '  "competitive_analysis": "<analysis of competitive landscape and differentiation>"\n'
            "}\n\n"
            "Scoring Guidelines:\n"
            "- 90-100: Exceptional, potential unicorn with clear technical moat\n"
            "- 80-89: Strong investment opportunity with significant growth potential\n"
            "- 70-79: Solid project worth monitoring, may need more maturity\n"
            "- 60-69: Interesting but with notable limitations\n"
            "- Below 60: Not investment-ready"
        )

    def estimate_cost(self, model: ModelProfile, input_tokens: int, output_tokens: int) -> float:
        return model.cost(input_tokens, output_tokens)

    def analyze(self, repository, readme_text: Optional[str], model: ModelProfile,
                time_budget: Optional[float] = None) -> AnalysisResult:
        """Run one analysis. Nothing is persisted here.

        `time_budget` bounds the Claude call, retry included, in seconds.

        Raises:
            ModelResponseError: The model's answer is unusable.
            UpstreamError: The API call failed (UpstreamRateLimited for 429).
        """
        full_name = _field(repository, "full_name")
        prompt = self.build_prompt(repository, readme_text, enhanced=model.enhanced)
        logger.info(f"Analyzing {full_name} with {model.name}")
        completion = self.claude_client.complete(prompt, model.name, model.max_tokens, time_budget=time_budget)
        try:
            payload = parse_response(completion.text)
        except ModelResponseError as e:
            logger.error(f"Unusable response from {model.name} for {full_name}: {e}. "
                         f"Raw response: {e.raw_response!r}")
            raise
        cost = self.estimate_cost(model, completion.input_tokens, completion.output_tokens)
        logger.info(f"Analysis of {full_name}: {payload.recommendation} "
                    f"(investment {payload.scores.investment:.0f}, cost ${cost:.4f})")
        return AnalysisResult(
            payload=payload,
            model=model.name,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost_usd=cost,
            raw_response=completion.text,
        )
