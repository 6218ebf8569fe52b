"""Flow variants and their construction."""

from __future__ import annotations

from typing import Any, Dict, List, NamedTuple, Optional, Type

from ..config import AutopilotConfig
from ..contracts import FlowVariant, PhaseName
from .base import BaseFlow, FlowTimings
from .design import DesignFlow
from .iterative import IterativeFlow
from .standard import StandardFlow


class VariantSpec(NamedTuple):
    flow_class: Type[BaseFlow]
    config_attr: str
    options: Dict[str, Any]


VARIANTS: Dict[FlowVariant, VariantSpec] = {
    FlowVariant.FULL: VariantSpec(StandardFlow, "full_challenge", {}),
    FlowVariant.DESIGN_SINGLE: VariantSpec(StandardFlow, "design_single_challenge", {}),
    FlowVariant.FIRST2FINISH: VariantSpec(
        IterativeFlow, "first2finish", {"overlap_final_submission": True}
    ),
    FlowVariant.TOPGEAR: VariantSpec(
        IterativeFlow, "topgear", {"submission_phase": PhaseName.TOPGEAR_SUBMISSION.value}
    ),
    FlowVariant.TOPGEAR_LATE: VariantSpec(
        IterativeFlow,
        "topgear",
        {"submission_phase": PhaseName.TOPGEAR_SUBMISSION.value, "late": True},
    ),
    FlowVariant.DESIGN: VariantSpec(DesignFlow, "design_challenge", {}),
    FlowVariant.DESIGN_FAIL_SCREENING: VariantSpec(
        DesignFlow, "design_fail_screening_challenge", {"fail_mode": "screening"}
    ),
    FlowVariant.DESIGN_FAIL_REVIEW: VariantSpec(
        DesignFlow, "design_fail_review_challenge", {"fail_mode": "review"}
    ),
}


def variant_config(variant: FlowVariant, config: AutopilotConfig) -> Any:
    return getattr(config.flows, VARIANTS[FlowVariant(variant)].config_attr)


def build_flow(variant: FlowVariant, config: AutopilotConfig, **deps: Any) -> BaseFlow:
    """Instantiate the flow of ``variant`` with its configuration section."""
    entry = VARIANTS[FlowVariant(variant)]
    return entry.flow_class(variant_config(variant, config), **entry.options, **deps)


def steps_for(variant: FlowVariant, config: Optional[AutopilotConfig] = None) -> List[str]:
    """Steps a run of ``variant`` executes, in order."""
    entry = VARIANTS[FlowVariant(variant)]
    flow_config = variant_config(variant, config or AutopilotConfig())
    return entry.flow_class.plan_for(flow_config, **entry.options)


__all__ = [
    "BaseFlow",
    "DesignFlow",
    "FlowTimings",
    "IterativeFlow",
    "StandardFlow",
    "VARIANTS",
    "build_flow",
    "steps_for",
    "variant_config",
]
