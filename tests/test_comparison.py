import pytest

from chainproof.errors import AuditNotComparable, IdenticalAudits
from chainproof.services.comparison import compare_audits

REENTRANCY = {
    "type": "reentrancy",
    "severity": "HIGH",
    "title": "Reentrancy in withdraw",
    "location": "withdraw()",
    "description": "External call before state update.",
}
ACCESS = {
    "type": "access-control",
    "severity": "MEDIUM",
    "title": "Missing onlyOwner",
    "location": "setOwner()",
}
TX_ORIGIN = {
    "type": "tx-origin",
    "severity": "LOW",
    "title": "tx.origin used for auth",
    "location": "auth()",
}


def test_reentrancy_fix_scenario(make_audit):
    before = make_audit("before", score=45, risk="HIGH", vulns=[REENTRANCY, ACCESS])
    after = make_audit("after", score=82, risk="LOW", vulns=[ACCESS])

    result = compare_audits(before, after)

    assert result.score_change == 37
    assert result.risk_level_change == "improved"
    assert result.vulnerabilities_fixed == 1
    assert result.new_vulnerabilities == 0
    deltas = dict(result.severity_deltas)
    assert deltas == {"CRITICAL": 0, "HIGH": -1, "MEDIUM": 0, "LOW": 0, "INFO": 0}
    assert result.improvements == (
        "Fixed HIGH reentrancy vulnerability at withdraw(): Reentrancy in withdraw",
        "Security score improved by 37 points",
        "Fixed 1 vulnerabilities",
    )
    assert result.regressions == ()


def test_regression_scenario(make_audit):
    before = make_audit("before", score=90, risk="LOW", vulns=[])
    after = make_audit("after", score=70, risk="MEDIUM", vulns=[TX_ORIGIN])

    result = compare_audits(before, after)
    assert result.risk_level_change == "worsened"
    assert result.new_vulnerabilities == 1
    assert result.regressions == (
        "New LOW tx-origin vulnerability at auth(): tx.origin used for auth",
        "Security score decreased by 20 points",
        "Introduced 1 new vulnerabilities",
    )
    assert result.improvements == ()


def test_unchanged(make_audit):
    before = make_audit("before", score=60, risk="MEDIUM", vulns=[ACCESS])
    after = make_audit("after", score=60, risk="MEDIUM", vulns=[dict(ACCESS, title="Renamed")])
    result = compare_audits(before, after)
    assert result.score_change == 0
    assert result.risk_level_change == "unchanged"
    assert result.vulnerabilities_fixed == 0
    assert result.new_vulnerabilities == 0


def test_swapping_inputs_negates_the_result(make_audit):
    a = make_audit("a", score=45, risk="HIGH", vulns=[REENTRANCY, ACCESS])
    b = make_audit("b", score=82, risk="LOW", vulns=[ACCESS, TX_ORIGIN])

    forward = compare_audits(a, b)
    backward = compare_audits(b, a)

    assert backward.score_change == -forward.score_change
    assert backward.vulnerabilities_fixed == forward.new_vulnerabilities
    assert backward.new_vulnerabilities == forward.vulnerabilities_fixed
    assert dict(backward.severity_deltas) == {k: -v for k, v in forward.severity_deltas}
    assert backward.risk_level_change == "worsened"


def test_duplicates_match_positionally(make_audit):
    before = make_audit("before", vulns=[REENTRANCY, REENTRANCY, ACCESS])
    after = make_audit("after", vulns=[REENTRANCY, ACCESS])
    result = compare_audits(before, after)
    assert result.vulnerabilities_fixed == 1
    assert result.new_vulnerabilities == 0


def test_matching_ignores_surrounding_whitespace_and_id(make_audit):
    before = make_audit("before", vulns=[REENTRANCY])
    after = make_audit("after", vulns=[dict(REENTRANCY, location="  withdraw() ")])
    result = compare_audits(before, after)
    assert result.vulnerabilities_fixed == 0
    assert result.new_vulnerabilities == 0


def test_near_duplicate_locations_are_distinct(make_audit):
    before = make_audit("before", vulns=[REENTRANCY])
    after = make_audit("after", vulns=[dict(REENTRANCY, location="withdraw(uint256)")])
    result = compare_audits(before, after)
    assert result.vulnerabilities_fixed == 1
    assert result.new_vulnerabilities == 1


def test_comparison_is_pure(make_audit):
    before = make_audit("before", vulns=[REENTRANCY])
    after = make_audit("after", score=80, risk="LOW")
    snapshot = (before.to_dict(), after.to_dict())

    first = compare_audits(before, after)
    second = compare_audits(before, after)

    assert first == second
    assert (before.to_dict(), after.to_dict()) == snapshot


def test_summaries(make_audit):
    before = make_audit("before", vulns=[REENTRANCY, ACCESS, ACCESS])
    after = make_audit("after", score=90, risk="LOW")
    data = compare_audits(before, after).to_dict()

    assert data["before_audit"]["id"] == "before"
    assert data["before_audit"]["created_at"] == "2024-05-01T12:00:00.123456Z"
    counts = {c["severity"]: c["count"] for c in data["before_audit"]["vulnerabilities"]}
    assert counts["MEDIUM"] == 2
    assert counts["HIGH"] == 1
    assert data["severity_deltas"]["MEDIUM"] == -2


def test_in_flight_audit_is_not_comparable(make_audit):
    done = make_audit("done")
    running = make_audit("running", status="ANALYZING")
    with pytest.raises(AuditNotComparable) as exc:
        compare_audits(done, running)
    assert exc.value.audit_id == "running"
    with pytest.raises(AuditNotComparable):
        compare_audits(make_audit("failed", status="ERROR"), done)


def test_same_audit_on_both_sides(make_audit):
    audit = make_audit("same")
    with pytest.raises(IdenticalAudits):
        compare_audits(audit, audit)
