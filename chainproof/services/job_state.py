# chainproof/services/job_state.py
"""
Máquina de estados de una auditoría.

PENDING -> STARTED -> ANALYZING -> DETECTING -> GENERATING_REPORT -> COMPLETED
y cualquier estado no terminal -> ERROR.

Cada transición se persiste (commit) ANTES de publicarse en el canal de
progreso: un observador que se une tarde y relee el ResultStore nunca ve un
estado más viejo que el último evento que recibió otro observador.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from chainproof.errors import AlreadyTerminal, AuditError, InvalidTransition
from chainproof.models.audit import Audit
from chainproof.models.enums import AuditStatus, RiskLevel, Severity
from chainproof.services import result_store
from chainproof.services.progress_channel import ProgressEvent

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Audit completed successfully!"

# Bandas de puntaje -> riesgo base
_SCORE_BANDS = [(80, RiskLevel.LOW), (60, RiskLevel.MEDIUM), (40, RiskLevel.HIGH)]

# Piso de riesgo impuesto por la peor severidad encontrada
_SEVERITY_FLOOR = {
    Severity.CRITICAL: RiskLevel.CRITICAL,
    Severity.HIGH: RiskLevel.HIGH,
    Severity.MEDIUM: RiskLevel.MEDIUM,
    Severity.LOW: RiskLevel.LOW,
    Severity.INFO: RiskLevel.LOW,
}


def derive_risk_level(overall_score: int, severities: Iterable[str] = ()) -> RiskLevel:
    level = RiskLevel.CRITICAL
    for threshold, band in _SCORE_BANDS:
        if overall_score >= threshold:
            level = band
            break
    for sev in severities:
        floor = _SEVERITY_FLOOR[Severity(str(sev).upper())]
        if floor.rank > level.rank:
            level = floor
    return level


class ProgressPublisher(Protocol):
    def publish(self, audit_id: str, event: ProgressEvent) -> int:
        ...


class JobStateMachine:
    def __init__(self, publisher: ProgressPublisher, clock: Callable[[], datetime] = datetime.utcnow):
        self.publisher = publisher
        self.clock = clock

    # ---------------------------
    # Helpers
    # ---------------------------

    def _load(self, audit_id: str) -> Audit:
        audit = result_store.get_audit(audit_id)
        if audit.is_terminal:
            logger.info(
                f"ignoring late transition on terminal audit ({audit.status})",
                extra={"audit_id": audit_id},
            )
            raise AlreadyTerminal(f"Audit {audit_id} is already {audit.status}", audit_id, audit.status)
        return audit

    def _reject(self, audit: Audit, requested: str, reason: str) -> InvalidTransition:
        logger.warning(
            f"rejected transition {audit.status} -> {requested}: {reason}",
            extra={"audit_id": audit.id},
        )
        return InvalidTransition(reason, audit.id, current=audit.status, requested=requested)

    def _commit_and_publish(self, audit: Audit, estimated_time_remaining: Optional[int] = None) -> ProgressEvent:
        result_store.save(audit)
        event = ProgressEvent.from_audit(audit, estimated_time_remaining)
        self.publisher.publish(audit.id, event)
        return event

    # ---------------------------
    # Transitions
    # ---------------------------

    def advance(
        self,
        audit_id: str,
        next_status,
        progress: int,
        message: str,
        current_step: Optional[str] = None,
        estimated_time_remaining: Optional[int] = None,
    ) -> ProgressEvent:
        """
        Avanza al sucesor inmediato (o repite el estado actual como "tick" de
        progreso). Pasar a ERROR equivale a ``fail``: el progreso se congela.
        """
        audit = self._load(audit_id)
        current = audit.lifecycle_status
        try:
            target = AuditStatus(next_status)
        except ValueError:
            raise self._reject(audit, str(next_status), f"Unknown status {next_status!r}")

        if target is AuditStatus.ERROR:
            return self._to_error(audit, message)
        if target is AuditStatus.COMPLETED:
            raise self._reject(audit, target.value, "COMPLETED is only reachable through finalize()")
        if target is not current and target is not current.successor():
            raise self._reject(
                audit, target.value,
                f"{target.value} is not the successor of {current.value}",
            )

        progress = int(progress)
        if not 0 <= progress <= 100:
            raise self._reject(audit, target.value, f"progress {progress} out of range 0..100")
        if progress < audit.progress:
            raise self._reject(
                audit, target.value,
                f"progress cannot decrease ({audit.progress} -> {progress})",
            )

        if target is AuditStatus.STARTED and audit.started_at is None:
            audit.started_at = self.clock()
        audit.status = target.value
        audit.progress = progress
        audit.message = message
        if current_step is not None:
            audit.current_step = current_step

        logger.info(
            f"audit {target.value} {progress}%: {message}",
            extra={"audit_id": audit.id},
        )
        return self._commit_and_publish(audit, estimated_time_remaining)

    def fail(self, audit_id: str, reason: str) -> ProgressEvent:
        audit = self._load(audit_id)
        return self._to_error(audit, reason)

    def _to_error(self, audit: Audit, reason: str) -> ProgressEvent:
        audit.status = AuditStatus.ERROR.value
        audit.message = reason
        audit.completed_at = self.clock()
        logger.error(f"audit failed at {audit.progress}%: {reason}", extra={"audit_id": audit.id})
        return self._commit_and_publish(audit)

    def finalize(
        self,
        audit_id: str,
        overall_score: int,
        risk_level,
        vulnerabilities: Iterable = (),
        gas_findings: Iterable = (),
    ) -> ProgressEvent:
        audit = self._load(audit_id)
        if audit.lifecycle_status is not AuditStatus.GENERATING_REPORT:
            raise self._reject(
                audit, AuditStatus.COMPLETED.value,
                f"finalize() requires GENERATING_REPORT, audit is {audit.status}",
            )

        score = int(overall_score)
        if not 0 <= score <= 100:
            raise self._reject(audit, AuditStatus.COMPLETED.value, f"overall_score {score} out of range 0..100")
        try:
            level = risk_level if isinstance(risk_level, RiskLevel) else RiskLevel(str(risk_level).upper())
        except ValueError:
            raise AuditError(f"Unknown risk level: {risk_level}", audit_id)

        result_store.attach_findings(audit, vulnerabilities, gas_findings)
        audit.overall_score = score
        audit.risk_level = level.value
        audit.status = AuditStatus.COMPLETED.value
        audit.progress = 100
        audit.message = COMPLETED_MESSAGE
        audit.current_step = "Completed"
        audit.completed_at = self.clock()

        logger.info(
            f"audit completed: score={score} risk={level.value} "
            f"vulnerabilities={len(audit.vulnerabilities)} gas_findings={len(audit.gas_findings)}",
            extra={"audit_id": audit.id},
        )
        return self._commit_and_publish(audit)
