# chainproof/services/export_service.py
"""
Exportación de una auditoría COMPLETED a tres formatos:

- ``data``:   JSON con todos los campos de la auditoría + fecha de generación
- ``text``:   reporte en texto plano (hallazgos agrupados por severidad)
- ``raster``: PDF paginado armado a partir de UN bitmap de la vista del reporte
"""
import io
import json
import logging
import math
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from chainproof.errors import AuditError, AuditNotExportable, RenderCaptureFailed
from chainproof.models.audit import Audit, iso, parse_iso
from chainproof.models.enums import AuditStatus
from chainproof.services import report_layout
from chainproof.services.report_renderer import CAPTURE_STYLE_OVERRIDES, RenderTarget, ReportViewRenderer

logger = logging.getLogger(__name__)

FORMATS = ("data", "text", "raster")

# Página A4 tal como la arma el reporte: 210 x 295 mm
PAGE_WIDTH_MM = 210
PAGE_HEIGHT_MM = 295

_EXTENSIONS = {"data": "json", "text": "txt", "raster": "pdf"}
_MIMETYPES = {"data": "application/json", "text": "text/plain", "raster": "application/pdf"}


@dataclass(frozen=True)
class RasterDocument:
    pdf: bytes
    page_count: int
    bitmap_size: Tuple[int, int]


def _check_exportable(audit: Audit) -> None:
    if audit.status != AuditStatus.COMPLETED.value:
        raise AuditNotExportable(
            f"Audit {audit.id} is {audit.status}; only COMPLETED audits can be exported",
            audit.id,
        )


def export_filename(audit: Audit, fmt: str) -> str:
    slug = "_".join((audit.contract_name or "audit").split()) or "audit"
    return f"{slug}_report.{_EXTENSIONS[fmt]}"


def export_mimetype(fmt: str) -> str:
    return _MIMETYPES[fmt]


# ---------------------------
# Structured data
# ---------------------------

def export_data(audit: Audit, generated_at: Optional[datetime] = None) -> str:
    _check_exportable(audit)
    payload = audit.to_dict()
    payload["report_generated"] = iso(generated_at or datetime.utcnow())
    return json.dumps(payload, indent=2, ensure_ascii=False)


def parse_data_export(payload: Union[str, bytes]) -> Tuple[Audit, Optional[datetime]]:
    """Inverso de ``export_data``: (auditoría transitoria, fecha de generación)."""
    data = json.loads(payload)
    generated = parse_iso(data.pop("report_generated", None))
    return Audit.from_dict(data), generated


# ---------------------------
# Text
# ---------------------------

def export_text(audit: Audit) -> str:
    _check_exportable(audit)
    lines = report_layout.header_lines(audit) + report_layout.findings_lines(audit) + report_layout.source_heading()
    head = "\n".join(line.text for line in lines)
    # el código va tal cual, sin re-formatear
    return f"{head}\n{report_layout.source_text(audit)}"


# ---------------------------
# Raster (PDF)
# ---------------------------

def page_height_for(width: int) -> int:
    return max(1, round(width * PAGE_HEIGHT_MM / PAGE_WIDTH_MM))


def paginate(bitmap: Image.Image):
    """Corta el bitmap en páginas de alto fijo; la última se completa a página entera."""
    width, height = bitmap.size
    page_h = page_height_for(width)
    pages = []
    for i in range(math.ceil(height / page_h)):
        top = i * page_h
        piece = bitmap.crop((0, top, width, min(top + page_h, height)))
        page = Image.new("RGB", (width, page_h), "white")
        page.paste(piece, (0, 0))
        pages.append(page)
    return pages


def _assemble_pdf(audit: Audit, pages) -> bytes:
    buffer = io.BytesIO()
    page_size = (PAGE_WIDTH_MM * mm, PAGE_HEIGHT_MM * mm)
    # invariant=1: sin fechas ni ids aleatorios -> bytes deterministas
    pdf = canvas.Canvas(buffer, pagesize=page_size, invariant=1)
    pdf.setTitle(f"{audit.contract_name} audit report")
    pdf.setAuthor("ChainProof")
    for page in pages:
        pdf.drawImage(ImageReader(page), 0, 0, width=page_size[0], height=page_size[1])
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def capture_report_view(audit: Audit, renderer: RenderTarget) -> Image.Image:
    """Aplica los overrides de estilo, captura, y SIEMPRE los retira."""
    renderer.apply_style_overrides(CAPTURE_STYLE_OVERRIDES)
    try:
        bitmap = renderer.capture(report_layout.report_lines(audit))
    except Exception as e:
        raise RenderCaptureFailed(f"Report capture failed: {e}", audit.id) from e
    finally:
        renderer.remove_style_overrides()

    if bitmap is None or bitmap.width == 0 or bitmap.height == 0:
        size = bitmap.size if bitmap is not None else None
        raise RenderCaptureFailed(f"Report capture produced an empty bitmap ({size})", audit.id)
    return bitmap


def export_raster(audit: Audit, renderer: Optional[RenderTarget] = None) -> RasterDocument:
    _check_exportable(audit)
    renderer = renderer or ReportViewRenderer()
    bitmap = capture_report_view(audit, renderer)
    pages = paginate(bitmap)
    pdf = _assemble_pdf(audit, pages)
    logger.info(
        f"raster export: {bitmap.width}x{bitmap.height}px -> {len(pages)} pages",
        extra={"audit_id": audit.id},
    )
    return RasterDocument(pdf=pdf, page_count=len(pages), bitmap_size=bitmap.size)


# ---------------------------
# Dispatcher
# ---------------------------

def render_export(audit: Audit, fmt: str, renderer: Optional[RenderTarget] = None) -> bytes:
    if fmt not in FORMATS:
        raise AuditError(f"Unknown export format: {fmt}", audit.id)
    if fmt == "data":
        return export_data(audit).encode("utf-8")
    if fmt == "text":
        return export_text(audit).encode("utf-8")
    return export_raster(audit, renderer).pdf


def save_export(audit: Audit, fmt: str, directory: Union[str, Path],
                renderer: Optional[RenderTarget] = None) -> Path:
    """
    Escribe el export en ``directory``. Todo se genera en memoria y el archivo
    aparece atómicamente: si algo falla no queda ningún archivo parcial.
    """
    content = render_export(audit, fmt, renderer)
    target = Path(directory) / export_filename(audit, fmt)
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=".export-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        os.replace(tmp, target)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return target
