import pytest

from autopilot_runner.contracts import FlowVariant, RoleDirectory, RoleName


def test_flow_variant_parse_is_case_insensitive():
    assert FlowVariant.parse("topgearlate") is FlowVariant.TOPGEAR_LATE
    assert FlowVariant.parse(" DesignFailReview ") is FlowVariant.DESIGN_FAIL_REVIEW
    assert FlowVariant.parse("full") is FlowVariant.FULL


def test_flow_variant_parse_rejects_unknown():
    with pytest.raises(ValueError):
        FlowVariant.parse("marathon")


def test_role_directory_ignores_unknown_roles():
    roles = RoleDirectory.from_roles(
        [
            {"id": "r1", "name": "Submitter"},
            {"id": "r2", "name": "Observer"},
            {"id": None, "name": "Reviewer"},
            "junk",
        ]
    )
    assert len(roles) == 1
    assert roles.get(RoleName.SUBMITTER) == "r1"
    assert RoleName.REVIEWER not in roles
    assert roles.missing(RoleName.SUBMITTER, RoleName.REVIEWER) == [RoleName.REVIEWER]


def test_screener_resolves_to_primary_screener_when_missing():
    roles = RoleDirectory.from_roles([{"id": "p1", "name": "Primary Screener"}])
    assert roles.resolve(RoleName.SCREENER) == (RoleName.PRIMARY_SCREENER, "p1")

    roles = RoleDirectory.from_roles(
        [{"id": "s1", "name": "Screener"}, {"id": "p1", "name": "Primary Screener"}]
    )
    assert roles.resolve(RoleName.SCREENER) == (RoleName.SCREENER, "s1")
    assert roles.resolve(RoleName.APPROVER) is None


def test_role_directory_round_trips_names():
    roles = RoleDirectory.from_names({"Reviewer": "r9", "Nobody": "x", "Copilot": ""})
    assert roles.as_names() == {"Reviewer": "r9"}
