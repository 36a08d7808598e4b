import os
from dotenv import load_dotenv


def _get_list(name: str, default: str) -> list:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    """Application configuration."""
    def __init__(self, load_env=True):
        if load_env:
            load_dotenv()
        # Credentials and storage
        self.github_token = os.getenv("GITHUB_TOKEN")
        self.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY")
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///ghintel.db")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.log_dir = os.getenv("LOG_DIR", "logs")

        # Discovery
        self.search_topics = _get_list("SEARCH_TOPICS", "ai,llm,agents,machine-learning,gpt,langchain")
        self.search_min_stars = int(os.getenv("SEARCH_MIN_STARS", "10"))
        self.search_max_results = int(os.getenv("SEARCH_MAX_RESULTS", "100"))
        self.discovery_min_repositories = int(os.getenv("DISCOVERY_MIN_REPOSITORIES", "50"))

        # Tier thresholds
        self.tier1_min_stars = int(os.getenv("TIER1_MIN_STARS", "100"))
        self.tier1_min_growth = float(os.getenv("TIER1_MIN_GROWTH", "10"))
        self.tier2_min_stars = int(os.getenv("TIER2_MIN_STARS", "50"))
        self.tier2_min_growth = float(os.getenv("TIER2_MIN_GROWTH", "2"))
        self.engagement_keywords = _get_list("ENGAGEMENT_KEYWORDS", "ai,llm,ml,gpt")
        # Scan priority = growth, engagement and log-stars terms weighted by these
        self.scan_priority_growth_weight = float(os.getenv("SCAN_PRIORITY_GROWTH_WEIGHT", "0.5"))
        self.scan_priority_engagement_weight = float(os.getenv("SCAN_PRIORITY_ENGAGEMENT_WEIGHT", "0.3"))
        self.scan_priority_stars_weight = float(os.getenv("SCAN_PRIORITY_STARS_WEIGHT", "0.2"))

        # Scan cadence (hours) and per-invocation quotas by tier
        self.tier_scan_hours = {
            1: float(os.getenv("TIER1_SCAN_HOURS", "6")),
            2: float(os.getenv("TIER2_SCAN_HOURS", "24")),
            3: float(os.getenv("TIER3_SCAN_HOURS", "168")),
        }
        self.tier_quotas = {
            1: int(os.getenv("TIER1_QUOTA", "10")),
            2: int(os.getenv("TIER2_QUOTA", "20")),
            3: int(os.getenv("TIER3_QUOTA", "30")),
        }

        # Calls per minute for each named API
        self.rate_limits = {
            "github": int(os.getenv("GITHUB_RPM", "30")),
            "github_search": int(os.getenv("GITHUB_SEARCH_RPM", "10")),
            "claude": int(os.getenv("CLAUDE_RPM", "5")),
        }
        self.rate_limit_window_seconds = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

        # Time budget of one invocation
        self.scan_budget_seconds = float(os.getenv("SCAN_BUDGET_SECONDS", "300"))
        self.scan_safety_buffer_seconds = float(os.getenv("SCAN_SAFETY_BUFFER_SECONDS", "10"))
        self.refresh_phase_share = float(os.getenv("REFRESH_PHASE_SHARE", "0.6"))

        # Analysis
        self.analysis_freshness_days = float(os.getenv("ANALYSIS_FRESHNESS_DAYS", "7"))
        self.analyses_per_run = int(os.getenv("ANALYSES_PER_RUN", "5"))
        self.analysis_max_tier = int(os.getenv("ANALYSIS_MAX_TIER", "2"))
        self.claude_model_high = os.getenv("CLAUDE_MODEL_HIGH", "claude-opus-4-1")
        self.claude_model_medium = os.getenv("CLAUDE_MODEL_MEDIUM", "claude-sonnet-4-5")
        self.claude_model_low = os.getenv("CLAUDE_MODEL_LOW", "claude-3-5-haiku-latest")
        self.model_high_threshold = float(os.getenv("MODEL_HIGH_THRESHOLD", "70"))
        self.model_medium_threshold = float(os.getenv("MODEL_MEDIUM_THRESHOLD", "50"))
        self.model_escalation_velocity = float(os.getenv("MODEL_ESCALATION_VELOCITY", "50"))
        self.claude_enhanced_analysis = os.getenv("CLAUDE_ENHANCED_ANALYSIS", "true").lower() in ("1", "true", "yes")
        # USD per million tokens (input, output) and completion caps by model role
        self.model_pricing = {
            "high": (float(os.getenv("CLAUDE_HIGH_INPUT_PRICE", "15")), float(os.getenv("CLAUDE_HIGH_OUTPUT_PRICE", "75"))),
            "medium": (float(os.getenv("CLAUDE_MEDIUM_INPUT_PRICE", "3")), float(os.getenv("CLAUDE_MEDIUM_OUTPUT_PRICE", "15"))),
            "low": (float(os.getenv("CLAUDE_LOW_INPUT_PRICE", "0.8")), float(os.getenv("CLAUDE_LOW_OUTPUT_PRICE", "4"))),
        }
        self.model_max_tokens = {
            "high": int(os.getenv("CLAUDE_HIGH_MAX_TOKENS", "16000")),
            "medium": int(os.getenv("CLAUDE_MEDIUM_MAX_TOKENS", "8000")),
            "low": int(os.getenv("CLAUDE_LOW_MAX_TOKENS", "2000")),
        }

        # Alerts
        self.alert_score_threshold = float(os.getenv("ALERT_SCORE_THRESHOLD", "80"))
        self.alert_urgent_score = float(os.getenv("ALERT_URGENT_SCORE", "90"))
        self.alert_growth_velocity = float(os.getenv("ALERT_GROWTH_VELOCITY", "50"))

        # Outbound call timeouts (seconds)
        self.github_timeout_seconds = int(os.getenv("GITHUB_TIMEOUT_SECONDS", "15"))
        self.claude_timeout_seconds = float(os.getenv("CLAUDE_TIMEOUT_SECONDS", "60"))

        self.data_retention_days = int(os.getenv("DATA_RETENTION_DAYS", "90"))


def get_config(load_env=True):
    return Config(load_env=load_env)
