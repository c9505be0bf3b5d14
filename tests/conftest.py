import os
from datetime import datetime

import pytest

from chainproof import create_app
from chainproof.models import db as _db
from chainproof.models.audit import Audit, GasFinding, Vulnerability
from chainproof.models.enums import AuditStatus
from chainproof.services import result_store
from chainproof.services.job_state import JobStateMachine
from chainproof.services.progress_channel import ProgressChannel

SAMPLE_SOURCE = """pragma solidity ^0.8.0;

contract Vault {
    mapping(address => uint256) public balances;

    function withdraw() external {
        uint256 amount = balances[msg.sender];
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok);
        balances[msg.sender] = 0;
    }
}
"""

@pytest.fixture(scope="session")
def app():
    os.environ["FLASK_ENV"] = "testing"
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def clean_tables(app):
    yield
    _db.session.rollback()
    for model in (Vulnerability, GasFinding, Audit):
        _db.session.query(model).delete()
    _db.session.commit()
    _db.session.expunge_all()

@pytest.fixture()
def machine():
    """State machine publicando en un canal propio del test."""
    return JobStateMachine(ProgressChannel())

@pytest.fixture()
def completed_audit(machine):
    """Factory: crea una auditoría y la lleva hasta COMPLETED."""

    def _make(name="Vault", score=45, risk="HIGH", vulnerabilities=(), gas_findings=(),
              source_code=SAMPLE_SOURCE):
        audit = result_store.create_audit(name, source_code=source_code)
        machine.advance(audit.id, AuditStatus.STARTED, 5, "Audit started")
        machine.advance(audit.id, AuditStatus.ANALYZING, 30, "Analyzing contract structure...")
        machine.advance(audit.id, AuditStatus.DETECTING, 60, "Detecting vulnerabilities...")
        machine.advance(audit.id, AuditStatus.GENERATING_REPORT, 90, "Generating security report...")
        machine.finalize(audit.id, score, risk, list(vulnerabilities), list(gas_findings))
        return result_store.get_audit(audit.id)

    return _make

def transient_audit(audit_id, *, status="COMPLETED", score=45, risk="HIGH", vulns=(), gas=(),
                    name="Vault", source_code=SAMPLE_SOURCE):
    """Audit fuera de la sesión (para comparación/export puros)."""
    created = datetime(2024, 5, 1, 12, 0, 0, 123456)
    return Audit(
        id=audit_id,
        contract_name=name,
        source_code=source_code,
        status=status,
        progress=100 if status == "COMPLETED" else 40,
        message="Audit completed successfully!" if status == "COMPLETED" else "Analyzing...",
        current_step="Completed" if status == "COMPLETED" else "Analysis",
        overall_score=score if status == "COMPLETED" else None,
        risk_level=risk if status == "COMPLETED" else None,
        created_at=created,
        started_at=created,
        completed_at=datetime(2024, 5, 1, 12, 3, 7, 5) if status == "COMPLETED" else None,
        updated_at=created,
        vulnerabilities=[
            Vulnerability(id=f"{audit_id}-v{i}", position=i, **v) for i, v in enumerate(vulns)
        ],
        gas_findings=[
            GasFinding(id=f"{audit_id}-g{i}", position=i, **g) for i, g in enumerate(gas)
        ],
    )

@pytest.fixture()
def make_audit():
    return transient_audit
