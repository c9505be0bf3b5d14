# chainproof/models/audit.py
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from chainproof.models import db
from chainproof.models.enums import AuditStatus
from chainproof.models.types import JSONBCompat


def _new_id() -> str:
    return uuid.uuid4().hex


def iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC sin pérdida (con microsegundos), sufijo Z."""
    return dt.isoformat() + "Z" if dt else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value[:-1] if value.endswith("Z") else value)


class Audit(db.Model):
    __tablename__ = "audits"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    contract_name = db.Column(db.String(255), nullable=False)

    # Origen del contrato: código fuente, o dirección + red (al menos uno)
    source_code = db.Column(db.Text, nullable=True)
    source_address = db.Column(db.String(42), index=True, nullable=True)
    network = db.Column(db.String(32), nullable=True)
    explorer_metadata = db.Column(JSONBCompat(), nullable=True)  # compiler, optimización, etc.

    # Ciclo de vida
    status = db.Column(db.String(24), nullable=False, default=AuditStatus.PENDING.value, index=True)
    progress = db.Column(db.Integer, nullable=False, default=0)
    message = db.Column(db.Text, nullable=True)
    current_step = db.Column(db.String(120), nullable=True)

    # Resultado (sólo en COMPLETED)
    overall_score = db.Column(db.Integer, nullable=True)    # 0..100
    risk_level = db.Column(db.String(16), nullable=True)    # LOW|MEDIUM|HIGH|CRITICAL

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    vulnerabilities = db.relationship(
        "Vulnerability",
        back_populates="audit",
        order_by="Vulnerability.position",
        cascade="all, delete-orphan",
    )
    gas_findings = db.relationship(
        "GasFinding",
        back_populates="audit",
        order_by="GasFinding.position",
        cascade="all, delete-orphan",
    )

    @property
    def lifecycle_status(self) -> AuditStatus:
        return AuditStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle_status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contract_name": self.contract_name,
            "source_code": self.source_code,
            "source_address": self.source_address,
            "network": self.network,
            "explorer_metadata": self.explorer_metadata,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "current_step": self.current_step,
            "overall_score": self.overall_score,
            "risk_level": self.risk_level,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "updated_at": iso(self.updated_at),
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "gas_findings": [g.to_dict() for g in self.gas_findings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Audit":
        """Instancia transitoria (no agregada a la sesión) a partir de ``to_dict``."""
        return cls(
            id=data["id"],
            contract_name=data["contract_name"],
            source_code=data.get("source_code"),
            source_address=data.get("source_address"),
            network=data.get("network"),
            explorer_metadata=data.get("explorer_metadata"),
            status=data["status"],
            progress=data["progress"],
            message=data.get("message"),
            current_step=data.get("current_step"),
            overall_score=data.get("overall_score"),
            risk_level=data.get("risk_level"),
            created_at=parse_iso(data.get("created_at")),
            started_at=parse_iso(data.get("started_at")),
            completed_at=parse_iso(data.get("completed_at")),
            updated_at=parse_iso(data.get("updated_at")),
            vulnerabilities=[Vulnerability.from_dict(v) for v in data.get("vulnerabilities") or []],
            gas_findings=[GasFinding.from_dict(g) for g in data.get("gas_findings") or []],
        )


class Vulnerability(db.Model):
    __tablename__ = "vulnerabilities"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    audit_id = db.Column(db.String(32), db.ForeignKey("audits.id", ondelete="CASCADE"), index=True, nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)  # orden de inserción

    type = db.Column(db.String(64), nullable=False)       # categoría (reentrancy, access-control, ...)
    severity = db.Column(db.String(16), nullable=False)   # CRITICAL|HIGH|MEDIUM|LOW|INFO
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)
    recommendation = db.Column(db.Text, nullable=True)
    confidence = db.Column(db.Float, nullable=True)       # 0..1

    audit = db.relationship("Audit", back_populates="vulnerabilities")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vulnerability":
        return cls(**{k: data.get(k) for k in (
            "id", "position", "type", "severity", "title",
            "description", "location", "recommendation", "confidence",
        )})


class GasFinding(db.Model):
    __tablename__ = "gas_findings"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    audit_id = db.Column(db.String(32), db.ForeignKey("audits.id", ondelete="CASCADE"), index=True, nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    type = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)
    recommendation = db.Column(db.Text, nullable=True)
    estimated_gas_saved = db.Column(db.Integer, nullable=True)  # unidades de gas estimadas

    audit = db.relationship("Audit", back_populates="gas_findings")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "recommendation": self.recommendation,
            "estimated_gas_saved": self.estimated_gas_saved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GasFinding":
        return cls(**{k: data.get(k) for k in (
            "id", "position", "type", "title", "description",
            "location", "recommendation", "estimated_gas_saved",
        )})
