# chainproof/services/comparison.py
"""
Comparación de dos auditorías COMPLETED (antes / después).

Los hallazgos se emparejan por (type, location), nunca por id: cada corrida
genera ids nuevos y puede analizar otra revisión del contrato. Si un mismo
(type, location) aparece varias veces en un lado, se empareja por posición
dentro del grupo (el más viejo primero), así los duplicados se compensan en
lugar de contarse como corregidos + nuevos.
"""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Tuple

from chainproof.errors import AuditNotComparable, IdenticalAudits
from chainproof.models.audit import Audit, iso
from chainproof.models.enums import AuditStatus, RiskLevel, SEVERITY_ORDER

IMPROVED = "improved"
WORSENED = "worsened"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class AuditSummary:
    id: str
    contract_name: str
    overall_score: int
    risk_level: str
    created_at: str
    severity_counts: Tuple[Tuple[str, int], ...]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contract_name": self.contract_name,
            "overall_score": self.overall_score,
            "risk_level": self.risk_level,
            "created_at": self.created_at,
            "vulnerabilities": [{"severity": s, "count": c} for s, c in self.severity_counts],
        }


@dataclass(frozen=True)
class ComparisonResult:
    before: AuditSummary
    after: AuditSummary
    score_change: int
    risk_level_change: str
    severity_deltas: Tuple[Tuple[str, int], ...]
    vulnerabilities_fixed: int
    new_vulnerabilities: int
    improvements: Tuple[str, ...]
    regressions: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "before_audit": self.before.to_dict(),
            "after_audit": self.after.to_dict(),
            "score_change": self.score_change,
            "risk_level_change": self.risk_level_change,
            "severity_deltas": {s: d for s, d in self.severity_deltas},
            "vulnerabilities_fixed": self.vulnerabilities_fixed,
            "new_vulnerabilities": self.new_vulnerabilities,
            "improvements": list(self.improvements),
            "regressions": list(self.regressions),
        }


def _match_key(vuln) -> Tuple[str, str]:
    return ((vuln.type or "").strip(), (vuln.location or "").strip())


def _severity_counts(audit: Audit) -> Dict[str, int]:
    counts = OrderedDict((sev.value, 0) for sev in SEVERITY_ORDER)
    for vuln in audit.vulnerabilities:
        if vuln.severity in counts:
            counts[vuln.severity] += 1
    return counts


def _summary(audit: Audit) -> AuditSummary:
    return AuditSummary(
        id=audit.id,
        contract_name=audit.contract_name,
        overall_score=audit.overall_score,
        risk_level=audit.risk_level,
        created_at=iso(audit.created_at),
        severity_counts=tuple(_severity_counts(audit).items()),
    )


def _risk_change(before: str, after: str) -> str:
    b, a = RiskLevel(before).rank, RiskLevel(after).rank
    if a < b:
        return IMPROVED
    if a > b:
        return WORSENED
    return UNCHANGED


def _unmatched(source: Audit, other: Audit) -> List:
    """Hallazgos de ``source`` sin pareja en ``other`` (emparejamiento posicional por grupo)."""
    available: Dict[Tuple[str, str], int] = {}
    for vuln in other.vulnerabilities:
        key = _match_key(vuln)
        available[key] = available.get(key, 0) + 1

    seen: Dict[Tuple[str, str], int] = {}
    unmatched = []
    for vuln in sorted(source.vulnerabilities, key=lambda v: v.position or 0):
        key = _match_key(vuln)
        idx = seen.get(key, 0)
        seen[key] = idx + 1
        if idx >= available.get(key, 0):
            unmatched.append(vuln)
    return unmatched


def _describe(vuln) -> str:
    where = f" at {vuln.location}" if vuln.location else ""
    return f"{vuln.severity} {vuln.type} vulnerability{where}: {vuln.title}"


def _check_comparable(audit: Audit) -> None:
    if audit.status != AuditStatus.COMPLETED.value:
        raise AuditNotComparable(
            f"Audit {audit.id} is {audit.status}; only COMPLETED audits can be compared",
            audit.id,
        )


def compare_audits(before: Audit, after: Audit) -> ComparisonResult:
    if before.id == after.id:
        raise IdenticalAudits("Cannot compare an audit with itself", before.id)
    _check_comparable(before)
    _check_comparable(after)

    score_change = after.overall_score - before.overall_score

    before_counts = _severity_counts(before)
    after_counts = _severity_counts(after)
    severity_deltas = tuple((sev, after_counts[sev] - before_counts[sev]) for sev in before_counts)

    fixed = _unmatched(before, after)
    introduced = _unmatched(after, before)

    improvements = [f"Fixed {_describe(v)}" for v in fixed]
    regressions = [f"New {_describe(v)}" for v in introduced]

    if score_change > 0:
        improvements.append(f"Security score improved by {score_change} points")
    if fixed:
        improvements.append(f"Fixed {len(fixed)} vulnerabilities")
    if score_change < 0:
        regressions.append(f"Security score decreased by {abs(score_change)} points")
    if introduced:
        regressions.append(f"Introduced {len(introduced)} new vulnerabilities")

    return ComparisonResult(
        before=_summary(before),
        after=_summary(after),
        score_change=score_change,
        risk_level_change=_risk_change(before.risk_level, after.risk_level),
        severity_deltas=severity_deltas,
        vulnerabilities_fixed=len(fixed),
        new_vulnerabilities=len(introduced),
        improvements=tuple(improvements),
        regressions=tuple(regressions),
    )
