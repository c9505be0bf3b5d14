# chainproof/services/analyzer.py
"""
Contrato con el motor de análisis (colaborador externo).

El motor se configura con ``AUDIT_ANALYZER="paquete.modulo:funcion"``. Recibe
la auditoría y un callback ``report(status, progress, message, ...)`` para
informar avance, y devuelve un ``AnalysisOutcome``.
"""
import importlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from chainproof.errors import AuditError

ReportFn = Callable[..., Any]
Analyzer = Callable[[Any, ReportFn], "AnalysisOutcome"]


@dataclass
class AnalysisOutcome:
    overall_score: int
    vulnerabilities: List[Dict[str, Any]] = field(default_factory=list)
    gas_findings: List[Dict[str, Any]] = field(default_factory=list)
    risk_level: Optional[str] = None  # si falta se deriva del puntaje y severidades

    @classmethod
    def coerce(cls, value) -> "AnalysisOutcome":
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                overall_score=int(value["overall_score"]),
                vulnerabilities=list(value.get("vulnerabilities") or []),
                gas_findings=list(value.get("gas_findings") or []),
                risk_level=value.get("risk_level"),
            )
        raise AuditError(f"Analyzer returned an unsupported result: {type(value).__name__}")


def load_analyzer(path: Optional[str]) -> Analyzer:
    if not path:
        raise AuditError("No analysis engine configured (AUDIT_ANALYZER)")
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise AuditError(f"AUDIT_ANALYZER must look like 'package.module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise AuditError(f"Could not load analyzer {path!r}: {e}") from e
