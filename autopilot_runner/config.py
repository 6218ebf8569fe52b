from __future__ import annotations

import logging
import os
from typing import Any, ClassVar, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID = 100439
DEFAULT_CHALLENGE_TYPE_ID = "927abff4-7af9-4145-8ba1-577c16e64e2e"
DEFAULT_CHALLENGE_TRACK_ID = "9b6fc876-f4d9-4ccb-9dfd-419247628825"
DEFAULT_TIMELINE_TEMPLATE_ID = "a5a15ac0-aef4-41bb-97c0-a9d5192eae42"
FIRST2FINISH_TIMELINE_TEMPLATE_ID = "0a0fed34-cb5a-47f5-b0cb-6e2ee7de8dcb"
TOPGEAR_TIMELINE_TEMPLATE_ID = "89be56ae-26a7-4bea-af03-9c9baf67017c"
DESIGN_SINGLE_TIMELINE_TEMPLATE_ID = "918f6a3e-1a63-4680-8b5e-deb95b1411e7"

DEFAULT_COPILOT = "TCConnCopilot"
DEFAULT_REVIEWER = "marioskranitsas"
DEFAULT_SCORECARD_ID = "jEChE8UnLAxHTD"
DEFAULT_ITERATIVE_SCORECARD_ID = "hFU73Ve2XlYCK-"
DEFAULT_PRIZES = [500.0, 200.0, 100.0]
DEFAULT_SUBMISSION_ZIP = "./artifacts/sample-submission.zip"


_UNSTRIPPED = {"challenge_name_prefix", "challengeNamePrefix"}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not value
    return False


class _ConfigModel(BaseModel):
    """Base for flow configs.

    Blank values are dropped before validation so the field default applies.
    Strings are trimmed, except the name prefix which keeps its separator.
    Keys may be given in snake_case or camelCase.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_blanks(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned: Dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, str) and key not in _UNSTRIPPED:
                value = value.strip()
            elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
                value = [v.strip() for v in value if v and v.strip()]
            if not _is_blank(value):
                cleaned[key] = value
        return cleaned


def _pad_prizes(value: Any, fallback: List[float]) -> List[float]:
    if not isinstance(value, (list, tuple)):
        return list(fallback)
    numbers: List[float] = []
    for entry in value:
        try:
            numbers.append(float(entry))
        except (TypeError, ValueError):
            continue
    return (numbers + fallback[len(numbers):])[:3] if numbers else list(fallback)


# ----------------------------------------------------------------------
# Flow configs


class FlowConfig(_ConfigModel):
    """Standard challenge flow settings."""

    challenge_name_prefix: str = "Autopilot Test - "
    project_id: int = DEFAULT_PROJECT_ID
    challenge_type_id: str = DEFAULT_CHALLENGE_TYPE_ID
    challenge_track_id: str = DEFAULT_CHALLENGE_TRACK_ID
    timeline_template_id: str = DEFAULT_TIMELINE_TEMPLATE_ID
    copilot_handle: str = DEFAULT_COPILOT
    screener: str = DEFAULT_REVIEWER
    reviewers: List[str] = Field(default_factory=lambda: ["liuliquan", "marioskranitsas"])
    submitters: List[str] = Field(default_factory=lambda: ["devtest140"])
    submissions_per_submitter: int = 1
    scorecard_id: str = DEFAULT_SCORECARD_ID
    prizes: List[float] = Field(default_factory=lambda: list(DEFAULT_PRIZES))
    submission_zip_path: str = DEFAULT_SUBMISSION_ZIP

    @field_validator("prizes", mode="before")
    @classmethod
    def _prizes(cls, value: Any) -> List[float]:
        return _pad_prizes(value, DEFAULT_PRIZES)


class DesignSingleConfig(FlowConfig):
    timeline_template_id: str = DESIGN_SINGLE_TIMELINE_TEMPLATE_ID


class IterativeConfig(_ConfigModel):
    """First2Finish / Topgear settings.

    The timeline template is fixed per variant and a submitter list shorter
    than ``min_submitters`` unique handles falls back to the default list.
    """

    min_submitters: ClassVar[int] = 2
    fixed_timeline_template_id: ClassVar[str] = FIRST2FINISH_TIMELINE_TEMPLATE_ID
    default_submitters: ClassVar[List[str]] = ["devtest140", "devtest141"]

    challenge_name_prefix: str = "Autopilot F2F - "
    project_id: int = DEFAULT_PROJECT_ID
    challenge_type_id: str = DEFAULT_CHALLENGE_TYPE_ID
    challenge_track_id: str = DEFAULT_CHALLENGE_TRACK_ID
    timeline_template_id: str = FIRST2FINISH_TIMELINE_TEMPLATE_ID
    copilot_handle: str = DEFAULT_COPILOT
    reviewer: str = DEFAULT_REVIEWER
    submitters: List[str] = Field(default_factory=list)
    scorecard_id: str = DEFAULT_ITERATIVE_SCORECARD_ID
    prize: float = 500.0
    submission_zip_path: str = DEFAULT_SUBMISSION_ZIP
    enable_post_mortem: bool = False

    @model_validator(mode="before")
    @classmethod
    def _single_prize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "prize" not in data and isinstance(data.get("prizes"), list):
            data = dict(data)
            data["prize"] = next(iter(data.pop("prizes")), None)
            if data["prize"] is None:
                data.pop("prize")
        return data

    @model_validator(mode="after")
    def _normalise(self) -> "IterativeConfig":
        unique = list(dict.fromkeys(self.submitters))
        self.submitters = unique if len(unique) >= self.min_submitters else list(self.default_submitters)
        self.timeline_template_id = self.fixed_timeline_template_id
        return self


class First2FinishConfig(IterativeConfig):
    pass


class TopgearConfig(IterativeConfig):
    min_submitters: ClassVar[int] = 1
    fixed_timeline_template_id: ClassVar[str] = TOPGEAR_TIMELINE_TEMPLATE_ID
    default_submitters: ClassVar[List[str]] = ["devtest140"]

    challenge_name_prefix: str = "Autopilot Topgear - "
    timeline_template_id: str = TOPGEAR_TIMELINE_TEMPLATE_ID


class DesignConfig(_ConfigModel):
    """Design challenge settings with per-phase handles and scorecards."""

    challenge_name_prefix: str = "Autopilot Design - "
    project_id: int = DEFAULT_PROJECT_ID
    challenge_type_id: str = DEFAULT_CHALLENGE_TYPE_ID
    challenge_track_id: str = DEFAULT_CHALLENGE_TRACK_ID
    timeline_template_id: str = DEFAULT_TIMELINE_TEMPLATE_ID
    copilot_handle: str = DEFAULT_COPILOT
    reviewer: str = DEFAULT_REVIEWER
    screener: str = DEFAULT_REVIEWER
    screening_reviewer: str = DEFAULT_REVIEWER
    approver: str = DEFAULT_REVIEWER
    checkpoint_screener: str = DEFAULT_REVIEWER
    checkpoint_reviewer: str = DEFAULT_REVIEWER
    submitters: List[str] = Field(default_factory=lambda: ["devtest140"])
    submissions_per_submitter: int = 1
    scorecard_id: str = DEFAULT_SCORECARD_ID
    review_scorecard_id: str = DEFAULT_SCORECARD_ID
    screening_scorecard_id: str = DEFAULT_SCORECARD_ID
    approval_scorecard_id: str = DEFAULT_SCORECARD_ID
    checkpoint_scorecard_id: str = DEFAULT_SCORECARD_ID
    checkpoint_screening_scorecard_id: str = DEFAULT_SCORECARD_ID
    checkpoint_review_scorecard_id: str = DEFAULT_SCORECARD_ID
    prizes: List[float] = Field(default_factory=lambda: list(DEFAULT_PRIZES))
    checkpoint_prize_amount: float = 100.0
    checkpoint_prize_count: int = 5
    submission_zip_path: str = DEFAULT_SUBMISSION_ZIP

    @field_validator("prizes", mode="before")
    @classmethod
    def _prizes(cls, value: Any) -> List[float]:
        return _pad_prizes(value, DEFAULT_PRIZES)

    @model_validator(mode="after")
    def _resolve_fallbacks(self) -> "DesignConfig":
        given = set(self.model_fields_set)

        def pick(*names: str) -> Optional[str]:
            for name in names:
                if name in given:
                    return getattr(self, name)
            return None

        for field, chain in (
            ("review_scorecard_id", ("review_scorecard_id", "scorecard_id")),
            ("screening_scorecard_id", ("screening_scorecard_id", "scorecard_id")),
            ("approval_scorecard_id", ("approval_scorecard_id", "scorecard_id")),
            ("checkpoint_screening_scorecard_id", ("checkpoint_screening_scorecard_id", "checkpoint_scorecard_id")),
            ("checkpoint_review_scorecard_id", ("checkpoint_review_scorecard_id", "checkpoint_scorecard_id")),
            ("screener", ("screener", "screening_reviewer", "reviewer")),
            ("approver", ("approver", "reviewer")),
            ("checkpoint_screener", ("checkpoint_screener", "screener", "screening_reviewer", "reviewer")),
            ("checkpoint_reviewer", ("checkpoint_reviewer", "reviewer")),
        ):
            value = pick(*chain)
            if value is not None:
                setattr(self, field, value)
        self.screening_reviewer = self.screener
        self.checkpoint_prize_amount = max(0.0, self.checkpoint_prize_amount)
        self.checkpoint_prize_count = max(0, int(self.checkpoint_prize_count))
        return self


class FlowsConfig(BaseModel):
    """Per-variant flow configurations."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    full_challenge: FlowConfig = Field(default_factory=FlowConfig)
    first2finish: First2FinishConfig = Field(default_factory=First2FinishConfig)
    topgear: TopgearConfig = Field(default_factory=TopgearConfig)
    design_challenge: DesignConfig = Field(default_factory=DesignConfig)
    design_fail_screening_challenge: DesignConfig = Field(default_factory=DesignConfig)
    design_fail_review_challenge: DesignConfig = Field(default_factory=DesignConfig)
    design_single_challenge: DesignSingleConfig = Field(default_factory=DesignSingleConfig)


# ----------------------------------------------------------------------
# Runtime settings


class ApiConfig(BaseModel):
    """Remote platform API settings."""

    base_url: str = "https://api.topcoder-dev.com/v6"
    timeout: float = 15.0


class AuthConfig(BaseModel):
    """Machine-to-machine credential settings."""

    secrets_path: str = "secrets/m2m.json"


class StorageConfig(BaseModel):
    """Submission artifact storage settings."""

    bucket: str = "topcoder-dev-submissions-dmz"
    region: str = "us-east-1"
    public_base_url: str = "https://s3.amazonaws.com"
    upload_base_url: Optional[str] = None

    @property
    def resolved_upload_base_url(self) -> str:
        if self.upload_base_url:
            return self.upload_base_url.rstrip("/")
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"


class AutopilotConfig(BaseModel):
    """Top-level configuration model."""

    api: ApiConfig = ApiConfig()
    auth: AuthConfig = AuthConfig()
    storage: StorageConfig = StorageConfig()
    snapshot_path: str = "data/last-run.json"
    flows: FlowsConfig = Field(default_factory=FlowsConfig)


def load_config(path: Optional[str] = None) -> AutopilotConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AUTOPILOT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AUTOPILOT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        try:
            config = AutopilotConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid config file {config_path}: {exc}") from exc
        logger.debug(f"Loaded config from {config_path}")
    else:
        if path:
            raise ConfigurationError(f"Config file not found: {path}")
        config = AutopilotConfig()

    env_base_url = os.getenv("AUTOPILOT_API_BASE_URL")
    if env_base_url:
        config.api.base_url = env_base_url
    env_snapshot = os.getenv("AUTOPILOT_SNAPSHOT_PATH")
    if env_snapshot:
        config.snapshot_path = env_snapshot
    env_secrets = os.getenv("AUTOPILOT_SECRETS_PATH")
    if env_secrets:
        config.auth.secrets_path = env_secrets
    env_region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")
    if env_region:
        config.storage.region = env_region
    return config
