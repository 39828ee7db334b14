"""
Thermal Engine - Report Generator
=================================
PDF thermal analysis reports.

Sections:
- Verdict summary with time-to-failure
- Hotspot table with margins to the failure limits
- Grid convergence (GCI) table
- Uncertainty statistics and Sobol indices
- Energy balance and solver warnings

Author: Thermal Engine Developers
Version: 1.0.0
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .logger import get_logger

HEADER_BLUE = colors.HexColor('#1976D2')
HEADER_GREY = colors.HexColor('#607D8B')
ROW_SHADE = colors.HexColor('#F5F5F5')
SAFE_GREEN = colors.HexColor('#2E7D32')
UNSAFE_RED = colors.HexColor('#C62828')


@dataclass
class ReportSettings:
    """Settings for report generation."""
    title: str = "Thermal Analysis Report"
    project_name: str = ""
    author: str = ""
    company: str = ""
    page_size: str = "A4"  # 'letter' or 'A4'
    include_hotspots: bool = True
    include_gci_table: bool = True
    include_uncertainty: bool = True
    include_energy_balance: bool = True
    max_hotspots: int = 20


def _fmt(value: Optional[float], spec: str = ".2f", unit: str = "") -> str:
    if value is None:
        return "-"
    if isinstance(value, float) and math.isinf(value):
        return "never"
    return f"{value:{spec}}{unit}"


def _table(data: List[List[Any]], col_widths: List[float], header=HEADER_BLUE,
           font_size: int = 9) -> Table:
    table = Table(data, colWidths=col_widths)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), header),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
        ('FONTSIZE', (0, 0), (-1, -1), font_size),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, ROW_SHADE]),
        ('TOPPADDING', (0, 1), (-1, -1), 4),
        ('BOTTOMPADDING', (0, 1), (-1, -1), 4),
    ]))
    return table


class ReportGenerator:
    """Generate PDF thermal analysis reports."""

    def __init__(self, settings: Optional[ReportSettings] = None):
        self.settings = settings or ReportSettings()
        self.logger = get_logger()
        styles = getSampleStyleSheet()
        self.styles = styles
        self.title_style = ParagraphStyle(
            'ReportTitle',
            parent=styles['Heading1'],
            fontSize=22,
            spaceAfter=24,
            alignment=TA_CENTER
        )
        self.heading_style = ParagraphStyle(
            'ReportHeading',
            parent=styles['Heading2'],
            fontSize=14,
            spaceBefore=18,
            spaceAfter=8
        )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------
    def _title_block(self) -> list:
        s = self.settings
        story = [Paragraph(s.title, self.title_style)]
        if s.project_name:
            story.append(Paragraph(f"Project: {s.project_name}", self.styles['Heading3']))
        story.append(Paragraph(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
                               self.styles['Normal']))
        if s.author:
            story.append(Paragraph(f"Author: {s.author}", self.styles['Normal']))
        if s.company:
            story.append(Paragraph(f"Company: {s.company}", self.styles['Normal']))
        story.append(Spacer(1, 0.3 * inch))
        return story

    def _summary(self, results, report) -> list:
        story = [Paragraph("Summary", self.heading_style)]
        if report is not None:
            colour = SAFE_GREEN if report.safe else UNSAFE_RED
            verdict_style = ParagraphStyle('Verdict', parent=self.styles['Heading2'],
                                           textColor=colour)
            story.append(Paragraph(f"Verdict: {report.verdict}", verdict_style))

        rows = [["Parameter", "Value"]]
        if results is not None:
            final = results.final_field
            rows.extend([
                ["Analysis", "Steady state" if results.steady_state else "Transient"],
                ["Minimum Temperature", _fmt(final.min_temp, ".2f", " °C")],
                ["Maximum Temperature", _fmt(final.max_temp, ".2f", " °C")],
                ["Average Temperature", _fmt(final.avg_temp, ".2f", " °C")],
            ])
            if not results.steady_state:
                rows.extend([
                    ["Simulated Time", _fmt(results.simulated_time_s, ".4g", " s")],
                    ["Steps Completed", str(results.steps_completed)],
                    ["Stability Limit (explicit)", _fmt(results.dt_limit_s, ".4g", " s")],
                ])
            rows.extend([
                ["Coupling Iterations", str(results.coupling_iterations)],
                ["Compute Time", _fmt(results.total_compute_time, ".2f", " s")],
            ])
        if report is not None:
            ttf = report.time_to_failure
            rows.append(["Time to Failure",
                         "at steady state" if ttf.time_to_failure_s is None
                         else _fmt(ttf.time_to_failure_s, ".4g", " s" if not ttf.safe else "")])
            if not ttf.safe:
                rows.extend([
                    ["Failure Mode", ttf.failure_mode.value],
                    ["Limit", f"{ttf.limit_name} (trigger {ttf.trigger_c:.1f} °C)"],
                    ["Location", f"node {ttf.node_id} at ({ttf.location_m[0]*1e3:.2f}, "
                                 f"{ttf.location_m[1]*1e3:.2f}) mm"],
                ])
        story.append(_table(rows, [3 * inch, 3 * inch], font_size=10))
        return story

    def _hotspots(self, report) -> list:
        story = [Paragraph("Hotspots", self.heading_style)]
        data = [["Node", "x (mm)", "y (mm)", "T (°C)", "Margin (°C)", "Limit"]]
        for spot in report.hotspots[:self.settings.max_hotspots]:
            data.append([str(spot.node_id), f"{spot.x_m*1e3:.2f}", f"{spot.y_m*1e3:.2f}",
                         f"{spot.temperature_c:.2f}", _fmt(spot.margin_c), spot.limit_name or "-"])
        story.append(_table(data, [0.7 * inch, 0.9 * inch, 0.9 * inch, 0.9 * inch,
                                   1.0 * inch, 2.1 * inch]))
        return story

    def _gci(self, refinement) -> list:
        story = [Paragraph("Grid Convergence", self.heading_style)]
        data = [["Level", "Nodes", "h (mm)", "Value (°C)", "GCI", "p", "Fs"]]
        for level in refinement.levels:
            data.append([str(level.level), str(level.n_nodes), f"{level.element_size_m*1e3:.3f}",
                         f"{level.value:.3f}",
                         "-" if level.gci is None else f"{level.gci:.2%}",
                         _fmt(level.order), _fmt(level.safety_factor)])
        story.append(_table(data, [0.6 * inch, 0.8 * inch, 0.9 * inch, 1.0 * inch,
                                   0.9 * inch, 0.7 * inch, 0.6 * inch], header=HEADER_GREY))
        status = "converged" if refinement.converged else "NOT converged"
        line = f"Target GCI {refinement.gci_target:.2%}: {status}"
        if refinement.extrapolated_value is not None:
            line += f"; Richardson estimate {refinement.extrapolated_value:.3f} °C"
        story.append(Spacer(1, 0.1 * inch))
        story.append(Paragraph(line, self.styles['Normal']))
        if refinement.comparison is not None:
            cmp = refinement.comparison
            story.append(Paragraph(f"Measured vs simulated: RMS {cmp.rms_c:.2f} °C, "
                                   f"max |error| {cmp.max_abs_c:.2f} °C over {len(cmp.points)} sensors",
                                   self.styles['Normal']))
        return story

    def _uncertainty(self, uq) -> list:
        story = [Paragraph("Uncertainty Quantification", self.heading_style)]
        rows = [["Statistic", "Value"],
                ["Samples (failed)", f"{uq.n_samples} ({uq.n_failed})"],
                ["Mean", f"{uq.mean:.3f}"],
                ["Std. deviation", f"{uq.std:.3f}"],
                [f"{uq.confidence:.0%} CI of mean", f"[{uq.ci_low:.3f}, {uq.ci_high:.3f}]"]]
        if uq.n_cancelled:
            rows.insert(2, ["Cancelled evaluations", str(uq.n_cancelled)])
        rows.extend([[name, f"{value:.3f}"] for name, value in uq.percentiles.items()])
        story.append(_table(rows, [3 * inch, 3 * inch]))
        if uq.first_order:
            story.append(Spacer(1, 0.15 * inch))
            data = [["Parameter", "First order S1", "Total order ST"]]
            for name in uq.parameter_names:
                data.append([name, _fmt(uq.first_order.get(name), ".3f"),
                             _fmt(uq.total_order.get(name), ".3f")])
            story.append(_table(data, [3 * inch, 1.5 * inch, 1.5 * inch], header=HEADER_GREY))
        return story

    def _energy_balance(self, balance) -> list:
        rows = [["Term", "Power (W)"],
                ["Sources", f"{balance.source_power_w:.4g}"],
                ["Fixed-temperature boundaries", f"{balance.dirichlet_outflow_w:.4g}"]]
        rows.extend([[kind.title(), f"{w:.4g}"] for kind, w in balance.boundary_outflow_w.items()])
        rows.append(["Relative imbalance", f"{balance.relative_imbalance:.2e}"])
        return [Paragraph("Energy Balance", self.heading_style),
                _table(rows, [3 * inch, 3 * inch], header=HEADER_GREY)]

    def _warnings(self, *sources) -> list:
        seen: List[str] = []
        for source in sources:
            for w in (getattr(source, 'warnings', None) or []):
                if w not in seen:
                    seen.append(w)
        if not seen:
            return []
        story = [Paragraph("Warnings", self.heading_style)]
        story.extend(Paragraph(f"• {w}", self.styles['Normal']) for w in seen)
        return story

    # ------------------------------------------------------------------
    def build_story(self, results=None, report=None, refinement=None, uq=None) -> list:
        """Flowables for whichever analysis outputs are given."""
        s = self.settings
        story = self._title_block()
        story.extend(self._summary(results, report))
        if s.include_hotspots and report is not None and report.hotspots:
            story.extend(self._hotspots(report))
        if (s.include_energy_balance and results is not None
                and results.energy_balance is not None):
            story.extend(self._energy_balance(results.energy_balance))
        if s.include_gci_table and refinement is not None and refinement.levels:
            story.append(PageBreak())
            story.extend(self._gci(refinement))
        if s.include_uncertainty and uq is not None and uq.n_samples:
            story.extend(self._uncertainty(uq))
        story.extend(self._warnings(results, report, refinement, uq))
        return story

    def generate(self, output_path: str, results=None, report=None,
                 refinement=None, uq=None) -> bool:
        """
        Generate a thermal analysis report.

        Returns True on success.
        """
        if results is None and report is None and refinement is None and uq is None:
            raise ValueError("Nothing to report")
        try:
            page_size = A4 if self.settings.page_size.lower() == 'a4' else letter
            doc = SimpleDocTemplate(
                str(output_path),
                pagesize=page_size,
                rightMargin=0.75 * inch,
                leftMargin=0.75 * inch,
                topMargin=0.75 * inch,
                bottomMargin=0.75 * inch,
                title=self.settings.title,
            )
            doc.build(self.build_story(results, report, refinement, uq))
        except OSError as e:
            self.logger.error(f"Report generation error: {e}")
            return False
        self.logger.info(f"Report written to {output_path}")
        return True


def generate_report(output_path: str, results=None, report=None, refinement=None, uq=None,
                    settings: Optional[ReportSettings] = None) -> bool:
    """
    Convenience function to generate a thermal report.

    Args:
        output_path: Path for the output PDF file
        results: ThermalResults
        report: OverheatReport
        refinement: RefinementResult
        uq: UQResult
        settings: Optional report settings

    Returns:
        True if report was generated successfully
    """
    generator = ReportGenerator(settings)
    return generator.generate(output_path, results, report, refinement, uq)


__all__ = ['ReportGenerator', 'ReportSettings', 'generate_report']
