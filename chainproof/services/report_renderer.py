# chainproof/services/report_renderer.py
"""
Colaborador de renderizado para el export raster.

El núcleo sólo necesita "un bitmap de ancho W y alto H del documento X".
``ReportViewRenderer`` dibuja la vista del reporte con Pillow. Antes de
capturar, el pipeline aplica overrides de estilo temporales (paleta clara
normalizada) y los retira al terminar, falle o no la captura.
"""
import textwrap
from typing import Dict, List, Optional, Protocol, Sequence

from PIL import Image, ImageDraw, ImageFont

from chainproof.services.report_layout import ReportLine

# Tema "en pantalla" (oscuro)
DEFAULT_THEME = {
    "background": "#0a0a0a",
    "foreground": "#fafafa",
    "muted": "#a3a3a3",
    "rule": "#404040",
    "code_background": "#171717",
    "CRITICAL": "#f87171",
    "HIGH": "#fb923c",
    "MEDIUM": "#facc15",
    "LOW": "#60a5fa",
    "INFO": "#a3a3a3",
}

# Paleta normalizada para captura / impresión
CAPTURE_STYLE_OVERRIDES = {
    "background": "#ffffff",
    "foreground": "#0a0a0a",
    "muted": "#737373",
    "rule": "#e5e5e5",
    "code_background": "#f5f5f5",
    "CRITICAL": "#dc2626",
    "HIGH": "#ea580c",
    "MEDIUM": "#ca8a04",
    "LOW": "#2563eb",
    "INFO": "#525252",
}

MARGIN = 24
LINE_SPACING = 4


class RenderTarget(Protocol):
    def apply_style_overrides(self, overrides: Dict[str, str]) -> None:
        ...

    def remove_style_overrides(self) -> None:
        ...

    def capture(self, lines: Sequence[ReportLine]) -> Image.Image:
        ...


class ReportViewRenderer:
    def __init__(self, width: int = 1240, theme: Optional[Dict[str, str]] = None, font=None):
        self.width = width
        self._theme = dict(theme or DEFAULT_THEME)
        self._overrides: List[Dict[str, str]] = []
        self._font = font or ImageFont.load_default()

    @property
    def active_overrides(self) -> int:
        return len(self._overrides)

    @property
    def palette(self) -> Dict[str, str]:
        merged = dict(self._theme)
        for layer in self._overrides:
            merged.update(layer)
        return merged

    def apply_style_overrides(self, overrides: Dict[str, str]) -> None:
        self._overrides.append(dict(overrides))

    def remove_style_overrides(self) -> None:
        if self._overrides:
            self._overrides.pop()

    def _metrics(self):
        left, top, right, bottom = self._font.getbbox("Ag")
        char_w = max(1, int(self._font.getlength("M")))
        return char_w, (bottom - top) + LINE_SPACING

    def _wrap(self, lines: Sequence[ReportLine], columns: int) -> List[ReportLine]:
        wrapped = []
        for line in lines:
            if not line.text:
                wrapped.append(line)
                continue
            parts = textwrap.wrap(
                line.text.expandtabs(4),
                width=columns,
                replace_whitespace=False,
                drop_whitespace=line.style != "code",
            ) or [""]
            wrapped.extend(ReportLine(p, line.style) for p in parts)
        return wrapped

    def _color(self, style: str, palette: Dict[str, str]) -> str:
        if style.startswith("severity:"):
            return palette.get(style.split(":", 1)[1], palette["foreground"])
        if style == "muted":
            return palette["muted"]
        return palette["foreground"]

    def capture(self, lines: Sequence[ReportLine]) -> Image.Image:
        if self.width <= 2 * MARGIN or not lines:
            return Image.new("RGB", (max(self.width, 0), 0))

        palette = self.palette
        char_w, line_h = self._metrics()
        columns = max(1, (self.width - 2 * MARGIN) // char_w)
        rows = self._wrap(lines, columns)

        height = 2 * MARGIN + line_h * len(rows)
        image = Image.new("RGB", (self.width, height), palette["background"])
        draw = ImageDraw.Draw(image)

        y = MARGIN
        for row in rows:
            if row.style == "code":
                draw.rectangle(
                    [(MARGIN // 2, y), (self.width - MARGIN // 2, y + line_h)],
                    fill=palette["code_background"],
                )
            if row.style == "rule":
                mid = y + line_h // 2
                draw.line([(MARGIN, mid), (self.width - MARGIN, mid)], fill=palette["rule"], width=1)
            elif row.text:
                draw.text((MARGIN, y), row.text, fill=self._color(row.style, palette), font=self._font)
            y += line_h
        return image
