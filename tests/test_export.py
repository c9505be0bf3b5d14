import json
import math
from datetime import datetime

import pytest
from PIL import Image

from chainproof.errors import AuditNotExportable, RenderCaptureFailed
from chainproof.services import export_service
from chainproof.services.report_layout import NO_SOURCE
from chainproof.services.report_renderer import CAPTURE_STYLE_OVERRIDES, DEFAULT_THEME, ReportViewRenderer

VULNS = [
    {"type": "tx-origin", "severity": "LOW", "title": "tx.origin auth", "location": "auth()"},
    {"type": "reentrancy", "severity": "CRITICAL", "title": "Reentrancy in withdraw", "location": "withdraw()",
     "description": "External call before state update.", "recommendation": "Use checks-effects-interactions.",
     "confidence": 0.9},
    {"type": "access-control", "severity": "HIGH", "title": "Missing onlyOwner", "location": "setOwner()"},
]
GAS = [{"type": "storage", "title": "Cache storage read", "location": "withdraw()", "estimated_gas_saved": 2100}]


class FakeRenderer:
    """Doble de captura: registra overrides y devuelve el bitmap configurado."""

    def __init__(self, bitmap=None, error=None):
        self.bitmap = bitmap
        self.error = error
        self.applied = []
        self.removed = 0

    def apply_style_overrides(self, overrides):
        self.applied.append(overrides)

    def remove_style_overrides(self):
        self.removed += 1

    def capture(self, lines):
        if self.error:
            raise self.error
        return self.bitmap


@pytest.fixture()
def audit(make_audit):
    return make_audit("a1", score=45, risk="HIGH", vulns=VULNS, gas=GAS, name="Vault V2")


# ---------------------------
# data
# ---------------------------

def test_data_export_round_trips(audit):
    generated = datetime(2024, 5, 2, 8, 30, 0, 42)
    payload = export_service.export_data(audit, generated_at=generated)

    parsed, when = export_service.parse_data_export(payload)
    assert when == generated
    assert parsed.to_dict() == audit.to_dict()


def test_data_export_carries_every_field(audit):
    data = json.loads(export_service.export_data(audit))
    assert data["report_generated"].endswith("Z")
    assert data["overall_score"] == 45
    assert data["completed_at"] == "2024-05-01T12:03:07.000005Z"
    assert [v["severity"] for v in data["vulnerabilities"]] == ["LOW", "CRITICAL", "HIGH"]
    assert data["vulnerabilities"][1]["confidence"] == 0.9
    assert data["gas_findings"][0]["estimated_gas_saved"] == 2100


# ---------------------------
# text
# ---------------------------

def test_text_export_groups_by_severity(audit):
    report = export_service.export_text(audit)
    assert report.startswith("SMART CONTRACT AUDIT REPORT")
    assert "Overall Score: 45/100" in report
    assert "Risk Level: HIGH" in report
    assert "VULNERABILITIES FOUND (3)" in report

    critical = report.index("[CRITICAL] (1)")
    high = report.index("[HIGH] (1)")
    low = report.index("[LOW] (1)")
    assert critical < high < low
    assert "[MEDIUM]" not in report
    assert report.index("1. Reentrancy in withdraw") < report.index("2. Missing onlyOwner")
    assert "GAS OPTIMIZATIONS (1)" in report


def test_text_export_keeps_source_verbatim(audit):
    report = export_service.export_text(audit)
    assert report.endswith(audit.source_code)
    assert report.index("CONTRACT CODE") < report.index("contract Vault {")


def test_text_export_without_source(make_audit):
    report = export_service.export_text(make_audit("nosrc", source_code=None))
    assert report.endswith(NO_SOURCE)
    assert "No vulnerabilities found." in report


# ---------------------------
# raster
# ---------------------------

def test_paginate_pads_last_page():
    width = 210
    page_h = export_service.page_height_for(width)
    assert page_h == 295
    bitmap = Image.new("RGB", (width, page_h * 2 + 10), "black")

    pages = export_service.paginate(bitmap)
    assert len(pages) == 3
    assert all(p.size == (width, page_h) for p in pages)
    assert pages[2].getpixel((5, 5)) == (0, 0, 0)
    assert pages[2].getpixel((5, 20)) == (255, 255, 255)


def test_raster_export_paginates_one_bitmap(make_audit):
    long_source = "\n".join(f"    uint256 public slot{i};" for i in range(300))
    audit = make_audit("long", vulns=VULNS, source_code=long_source)

    doc = export_service.export_raster(audit, ReportViewRenderer(width=420))
    width, height = doc.bitmap_size
    assert width == 420
    assert doc.page_count == math.ceil(height / export_service.page_height_for(420))
    assert doc.page_count > 1
    assert doc.pdf.startswith(b"%PDF")


def test_raster_export_is_deterministic(audit):
    first = export_service.export_raster(audit, ReportViewRenderer(width=420)).pdf
    second = export_service.export_raster(audit, ReportViewRenderer(width=420)).pdf
    assert first == second


def test_capture_uses_print_palette_then_restores():
    renderer = ReportViewRenderer(width=420)
    renderer.apply_style_overrides(CAPTURE_STYLE_OVERRIDES)
    assert renderer.palette["background"] == "#ffffff"
    renderer.remove_style_overrides()
    assert renderer.palette == DEFAULT_THEME
    assert renderer.active_overrides == 0


def test_zero_height_capture_fails_without_writing(audit, tmp_path):
    renderer = FakeRenderer(bitmap=Image.new("RGB", (420, 0)))
    with pytest.raises(RenderCaptureFailed):
        export_service.save_export(audit, "raster", tmp_path, renderer)
    assert list(tmp_path.iterdir()) == []
    assert renderer.applied == [CAPTURE_STYLE_OVERRIDES]
    assert renderer.removed == 1


def test_too_narrow_renderer_fails(audit):
    renderer = ReportViewRenderer(width=10)
    with pytest.raises(RenderCaptureFailed):
        export_service.export_raster(audit, renderer)
    assert renderer.active_overrides == 0


def test_capture_exception_restores_styles(audit):
    renderer = FakeRenderer(error=RuntimeError("view not mounted"))
    with pytest.raises(RenderCaptureFailed) as exc:
        export_service.export_raster(audit, renderer)
    assert "view not mounted" in str(exc.value)
    assert renderer.removed == 1


def test_export_succeeds_after_a_failed_capture(audit, tmp_path):
    with pytest.raises(RenderCaptureFailed):
        export_service.save_export(audit, "raster", tmp_path, FakeRenderer(bitmap=Image.new("RGB", (420, 0))))

    path = export_service.save_export(audit, "raster", tmp_path, ReportViewRenderer(width=420))
    assert path.name == "Vault_V2_report.pdf"
    assert path.read_bytes().startswith(b"%PDF")
    assert [p.name for p in tmp_path.iterdir()] == ["Vault_V2_report.pdf"]


def test_save_text_export(audit, tmp_path):
    path = export_service.save_export(audit, "text", tmp_path)
    assert path.name == "Vault_V2_report.txt"
    assert path.read_text(encoding="utf-8") == export_service.export_text(audit)


def test_save_data_export(audit, tmp_path):
    path = export_service.save_export(audit, "data", tmp_path)
    assert path.name == "Vault_V2_report.json"
    parsed, generated = export_service.parse_data_export(path.read_bytes())
    assert parsed.id == "a1"
    assert generated is not None


# ---------------------------
# precondiciones
# ---------------------------

@pytest.mark.parametrize("status", ["PENDING", "ANALYZING", "ERROR"])
@pytest.mark.parametrize("fmt", ["data", "text", "raster"])
def test_only_completed_audits_export(make_audit, status, fmt):
    audit = make_audit("x", status=status)
    renderer = FakeRenderer(bitmap=Image.new("RGB", (420, 100)))
    with pytest.raises(AuditNotExportable):
        export_service.render_export(audit, fmt, renderer)
    assert renderer.applied == []
