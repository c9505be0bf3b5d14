# chainproof/services/result_store.py
"""
Acceso al almacén de resultados (Audit / Vulnerability / GasFinding).

Todas las escrituras del ciclo de vida pasan por aquí para que el commit a la
base de datos ocurra siempre antes de notificar a los observadores.
"""
from typing import Any, Iterable, List, Mapping, Optional, Union

from web3 import Web3

from chainproof.errors import AuditError, AuditNotFound
from chainproof.models import db
from chainproof.models.audit import Audit, GasFinding, Vulnerability
from chainproof.models.enums import AuditStatus, Severity

DEFAULT_NETWORK = "ethereum"

VulnerabilityLike = Union[Vulnerability, Mapping[str, Any]]
GasFindingLike = Union[GasFinding, Mapping[str, Any]]


# ---------------------------
# Normalization helpers
# ---------------------------

def _norm_addr(addr: str) -> str:
    """Normalize an EVM address to checksum format (raises on invalid)."""
    try:
        return Web3.to_checksum_address(addr.strip())
    except ValueError as e:
        raise AuditError(f"Invalid contract address: {addr}") from e


def _norm_net(net: Optional[str]) -> str:
    return (net or DEFAULT_NETWORK).strip()


# ---------------------------
# Audits
# ---------------------------

def create_audit(
    contract_name: str,
    *,
    source_code: Optional[str] = None,
    source_address: Optional[str] = None,
    network: Optional[str] = None,
) -> Audit:
    """Crea la auditoría en PENDING. Requiere código fuente o dirección."""
    name = (contract_name or "").strip()
    if not name:
        raise AuditError("contract_name is required")
    if not (source_code and source_code.strip()) and not (source_address and source_address.strip()):
        raise AuditError("Either source_code or source_address is required")

    audit = Audit(
        contract_name=name,
        source_code=source_code or None,
        source_address=_norm_addr(source_address) if source_address else None,
        network=_norm_net(network) if (source_address or network) else None,
        status=AuditStatus.PENDING.value,
        progress=0,
        message="Audit queued",
    )
    db.session.add(audit)
    db.session.commit()
    return audit


def get_audit(audit_id: str) -> Audit:
    audit = db.session.get(Audit, audit_id)
    if audit is None:
        raise AuditNotFound(f"Audit {audit_id} not found", audit_id)
    return audit


def find_audit(audit_id: str) -> Optional[Audit]:
    return db.session.get(Audit, audit_id)


def list_audits(status: Optional[str] = None, limit: int = 50) -> List[Audit]:
    q = Audit.query
    if status:
        q = q.filter(Audit.status == status.upper())
    return q.order_by(Audit.created_at.desc()).limit(limit).all()


def save(audit: Audit) -> Audit:
    db.session.add(audit)
    db.session.commit()
    return audit


def refresh(audit: Audit) -> Audit:
    """Relee la fila (otro proceso puede haberla avanzado)."""
    db.session.refresh(audit)
    return audit


def discard_changes() -> None:
    """Descarta cambios sin commit (p.ej. un finalize a medio aplicar)."""
    db.session.rollback()


# ---------------------------
# Findings
# ---------------------------

def _required(item: Mapping[str, Any], key: str, kind: str) -> Any:
    value = item.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise AuditError(f"{kind} is missing required field '{key}'")
    return value


def _as_vulnerability(item: VulnerabilityLike, position: int) -> Vulnerability:
    if isinstance(item, Vulnerability):
        item.position = position
        return item
    raw = item.get("severity", Severity.INFO)
    severity = raw.value if isinstance(raw, Severity) else str(raw).upper()
    if severity not in Severity.__members__:
        raise AuditError(f"Unknown severity: {severity}")
    confidence = item.get("confidence")
    if confidence is not None:
        confidence = min(1.0, max(0.0, float(confidence)))
    return Vulnerability(
        position=position,
        type=_required(item, "type", "Vulnerability"),
        severity=severity,
        title=_required(item, "title", "Vulnerability"),
        description=item.get("description"),
        location=item.get("location"),
        recommendation=item.get("recommendation"),
        confidence=confidence,
    )


def _as_gas_finding(item: GasFindingLike, position: int) -> GasFinding:
    if isinstance(item, GasFinding):
        item.position = position
        return item
    saved = item.get("estimated_gas_saved")
    return GasFinding(
        position=position,
        type=_required(item, "type", "Gas finding"),
        title=_required(item, "title", "Gas finding"),
        description=item.get("description"),
        location=item.get("location"),
        recommendation=item.get("recommendation"),
        estimated_gas_saved=int(saved) if saved is not None else None,
    )


def attach_findings(
    audit: Audit,
    vulnerabilities: Iterable[VulnerabilityLike],
    gas_findings: Iterable[GasFindingLike],
) -> None:
    """
    Adjunta hallazgos en orden de inserción (no hace commit). Ambas listas se
    validan antes de tocar la auditoría: o se adjunta todo o nada.
    """
    vulns = [_as_vulnerability(v, i) for i, v in enumerate(vulnerabilities or [])]
    gas = [_as_gas_finding(g, i) for i, g in enumerate(gas_findings or [])]
    audit.vulnerabilities = vulns
    audit.gas_findings = gas
