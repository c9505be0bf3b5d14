# chainproof/models/enums.py
from enum import Enum


class _ValueEnum(str, Enum):
    # str(RiskLevel.HIGH) == "HIGH", igual que el valor guardado en la base
    def __str__(self) -> str:
        return self.value


class AuditStatus(_ValueEnum):
    PENDING = "PENDING"
    STARTED = "STARTED"
    ANALYZING = "ANALYZING"
    DETECTING = "DETECTING"
    GENERATING_REPORT = "GENERATING_REPORT"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (AuditStatus.COMPLETED, AuditStatus.ERROR)

    @property
    def rank(self) -> int:
        return LIFECYCLE.index(self) if self in LIFECYCLE else -1

    def successor(self):
        """Siguiente estado en la secuencia lineal (None para terminales)."""
        if self.is_terminal:
            return None
        return LIFECYCLE[LIFECYCLE.index(self) + 1]


# Orden estricto del ciclo de vida; ERROR queda fuera (alcanzable desde cualquier no terminal)
LIFECYCLE = [
    AuditStatus.PENDING,
    AuditStatus.STARTED,
    AuditStatus.ANALYZING,
    AuditStatus.DETECTING,
    AuditStatus.GENERATING_REPORT,
    AuditStatus.COMPLETED,
]


class RiskLevel(_ValueEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return RISK_ORDER.index(self)


RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Severity(_ValueEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


# Orden de presentación (reportes, comparaciones)
SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFO]
