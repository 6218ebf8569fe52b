"""Data model for the persisted run snapshot."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _SnapshotModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChallengeResource(_SnapshotModel):
    """A resource assignment discovered on the challenge."""

    id: str
    member_id: Optional[str] = None
    member_handle: Optional[str] = None
    role_id: Optional[str] = None


class RunSnapshot(_SnapshotModel):
    """Cross-step state of the last run.

    Keys are only added during a run; a new run starts from an empty snapshot.
    """

    challenge_id: Optional[str] = None
    challenge_name: Optional[str] = None
    # submitter handle -> submission ids
    submissions: Optional[Dict[str, List[str]]] = None
    checkpoint_submissions: Optional[Dict[str, List[str]]] = None
    # "reviewer:submitter:submissionId" -> review id
    reviews: Optional[Dict[str, str]] = None
    appeals: Optional[List[str]] = None
    appealed_comment_ids: Optional[List[str]] = None
    # reviewer handle -> resource id
    reviewer_resources: Optional[Dict[str, str]] = None
    # handle -> role name -> resource id
    reviewer_resources_by_handle: Optional[Dict[str, Dict[str, str]]] = None
    challenge_resources: Optional[List[ChallengeResource]] = None
    # role name -> role id
    resource_role_ids: Optional[Dict[str, str]] = None

    def merged(self, patch: Dict[str, object]) -> "RunSnapshot":
        """Return a copy with the top-level keys of ``patch`` replaced."""
        data = self.model_dump(exclude_none=True)
        for key, value in patch.items():
            if key not in RunSnapshot.model_fields:
                raise KeyError(f"Unknown snapshot field: {key}")
            data[key] = value.model_dump() if isinstance(value, BaseModel) else value
        return RunSnapshot(**data)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
