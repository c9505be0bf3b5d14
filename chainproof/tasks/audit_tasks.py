# chainproof/tasks/audit_tasks.py
import logging

from celery import shared_task
from flask import current_app

from chainproof.errors import AlreadyTerminal
from chainproof.models.enums import AuditStatus
from chainproof.services import result_store
from chainproof.services.analyzer import AnalysisOutcome, load_analyzer
from chainproof.services.job_state import JobStateMachine, derive_risk_level
from chainproof.services.progress_service import build_state_machine
from chainproof.services.source_service import fetch_verified_source

logger = logging.getLogger(__name__)


def _advance_to(machine: JobStateMachine, audit_id: str, target: AuditStatus, progress: int,
                message: str, current_step: str = None):
    """Recorre los estados intermedios hasta ``target`` (sin saltear ninguno)."""
    audit = result_store.get_audit(audit_id)
    status = audit.lifecycle_status
    progress = max(progress, audit.progress)
    while status.rank < target.rank:
        status = status.successor()
        machine.advance(audit_id, status, progress, message, current_step)


def _fetch_source(machine: JobStateMachine, audit_id: str) -> None:
    audit = result_store.get_audit(audit_id)
    machine.advance(audit_id, AuditStatus.STARTED, 10,
                    "Fetching verified source code...", "Fetching Source")
    fetched = fetch_verified_source(
        audit.source_address,
        audit.network or "ethereum",
        api_key=current_app.config.get("EXPLORER_API_KEY"),
    )
    audit.source_code = fetched["source_code"]
    audit.explorer_metadata = {
        "contract_name": fetched["contract_name"],
        "compiler_version": fetched["compiler_version"],
        "optimization_enabled": fetched["optimization_enabled"],
        "chain_id": fetched["chain_id"],
    }
    result_store.save(audit)


def execute_audit(machine: JobStateMachine, audit_id: str, analyzer) -> dict:
    """Conduce una auditoría de PENDING a COMPLETED | ERROR."""
    try:
        machine.advance(audit_id, AuditStatus.STARTED, 5, "Audit started", "Initialization")

        audit = result_store.get_audit(audit_id)
        if not audit.source_code and audit.source_address:
            _fetch_source(machine, audit_id)

        def report(status, progress, message, current_step=None, estimated_time_remaining=None):
            return machine.advance(audit_id, status, progress, message, current_step, estimated_time_remaining)

        outcome = AnalysisOutcome.coerce(analyzer(result_store.get_audit(audit_id), report))

        _advance_to(machine, audit_id, AuditStatus.GENERATING_REPORT, 95,
                    "Generating security report...", "Report Generation")

        risk = outcome.risk_level or derive_risk_level(
            outcome.overall_score, [v.get("severity", "INFO") for v in outcome.vulnerabilities]
        )
        machine.finalize(audit_id, outcome.overall_score, risk, outcome.vulnerabilities, outcome.gas_findings)
        audit = result_store.get_audit(audit_id)
        return {"ok": True, "audit_id": audit_id, "overall_score": audit.overall_score, "risk_level": audit.risk_level}

    except AlreadyTerminal:
        logger.info("audit already terminal; nothing to do", extra={"audit_id": audit_id})
        audit = result_store.get_audit(audit_id)
        return {"ok": audit.status == AuditStatus.COMPLETED.value, "audit_id": audit_id, "status": audit.status}

    except Exception as e:
        logger.exception("audit run failed", extra={"audit_id": audit_id})
        # lo que quedó a medio aplicar en la sesión no se persiste junto al ERROR
        result_store.discard_changes()
        try:
            machine.fail(audit_id, str(e) or e.__class__.__name__)
        except AlreadyTerminal:
            pass  # terminó por otro camino; el error original se propaga igual
        raise


@shared_task(name="audit.run")
def run_audit(audit_id: str):
    machine = build_state_machine()
    analyzer_path = current_app.config.get("AUDIT_ANALYZER")

    def analyzer(audit, report):
        # se resuelve dentro de execute_audit: si no carga, la auditoría pasa a ERROR
        return load_analyzer(analyzer_path)(audit, report)

    return execute_audit(machine, audit_id, analyzer)
