# chainproof/services/report_layout.py
"""
Disposición común del reporte.

El export de texto y la vista que se captura para el PDF salen de las mismas
líneas, así los tres formatos muestran el mismo puntaje, los mismos
hallazgos y el mismo orden.
"""
from collections import namedtuple
from typing import List

from chainproof.models.audit import Audit
from chainproof.models.enums import SEVERITY_ORDER

ReportLine = namedtuple("ReportLine", ["text", "style"])

# estilos: title | rule | heading | label | body | muted | severity:<SEV>
TITLE = "SMART CONTRACT AUDIT REPORT"
NO_SOURCE = "Contract code not available"


def _fmt_date(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC") if dt else "-"


def header_lines(audit: Audit) -> List[ReportLine]:
    lines = [
        ReportLine(TITLE, "title"),
        ReportLine("=" * 50, "rule"),
        ReportLine("", "body"),
        ReportLine(f"Contract Name: {audit.contract_name}", "label"),
    ]
    if audit.source_address:
        lines.append(ReportLine(f"Address: {audit.source_address} ({audit.network})", "label"))
    lines += [
        ReportLine(f"Created: {_fmt_date(audit.created_at)}", "label"),
        ReportLine(f"Completed: {_fmt_date(audit.completed_at)}", "label"),
        ReportLine(f"Overall Score: {audit.overall_score}/100", "label"),
        ReportLine(f"Risk Level: {audit.risk_level}", "label"),
        ReportLine("", "body"),
    ]
    return lines


def findings_lines(audit: Audit) -> List[ReportLine]:
    vulns = list(audit.vulnerabilities)
    lines = [
        ReportLine(f"VULNERABILITIES FOUND ({len(vulns)})", "heading"),
        ReportLine("=" * 30, "rule"),
        ReportLine("", "body"),
    ]
    if not vulns:
        lines += [ReportLine("No vulnerabilities found.", "muted"), ReportLine("", "body")]

    number = 0
    for severity in SEVERITY_ORDER:
        group = [v for v in vulns if v.severity == severity.value]
        if not group:
            continue
        lines.append(ReportLine(f"[{severity.value}] ({len(group)})", f"severity:{severity.value}"))
        lines.append(ReportLine("-" * 30, "rule"))
        for vuln in group:
            number += 1
            lines += [
                ReportLine(f"{number}. {vuln.title}", "body"),
                ReportLine(f"   Location: {vuln.location or '-'}", "muted"),
                ReportLine(f"   Description: {vuln.description or '-'}", "body"),
                ReportLine(f"   Recommendation: {vuln.recommendation or '-'}", "body"),
                ReportLine("", "body"),
            ]

    gas = list(audit.gas_findings)
    if gas:
        lines += [
            ReportLine(f"GAS OPTIMIZATIONS ({len(gas)})", "heading"),
            ReportLine("=" * 30, "rule"),
            ReportLine("", "body"),
        ]
        for i, finding in enumerate(gas, start=1):
            saved = finding.estimated_gas_saved if finding.estimated_gas_saved is not None else "-"
            lines += [
                ReportLine(f"{i}. {finding.title}", "body"),
                ReportLine(f"   Location: {finding.location or '-'}", "muted"),
                ReportLine(f"   Estimated gas saved: {saved}", "muted"),
                ReportLine(f"   Description: {finding.description or '-'}", "body"),
                ReportLine(f"   Recommendation: {finding.recommendation or '-'}", "body"),
                ReportLine("", "body"),
            ]
    return lines


def source_heading() -> List[ReportLine]:
    return [ReportLine("CONTRACT CODE", "heading"), ReportLine("=" * 20, "rule"), ReportLine("", "body")]


def source_text(audit: Audit) -> str:
    return audit.source_code or NO_SOURCE


def report_lines(audit: Audit) -> List[ReportLine]:
    """Todas las líneas del reporte, incluido el código (una línea por renglón)."""
    code = [ReportLine(line, "code") for line in source_text(audit).splitlines()]
    return header_lines(audit) + findings_lines(audit) + source_heading() + code
