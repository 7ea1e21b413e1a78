#!/usr/bin/env python3
"""
Excel report for a scoring run.

Sheets:
  1. Scores       ranked securities, category composites, peer diagnostics
  2. Betas        resolved beta horizons and portfolio exposure
  3. Risk         portfolio risk metrics
  4. Performance  per-holding returns and contributions (when holdings given)
"""

from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from metric_extractor import METRIC_COLS

# =========================================================================
# Styling
# =========================================================================
HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
TITLE_FONT = Font(name="Calibri", size=14, bold=True, color="1F4E79")
SUBTITLE_FONT = Font(name="Calibri", size=11, bold=True, color="1F4E79")
DATA_FONT = Font(name="Calibri", size=10)
THIN_BORDER = Border(
    left=Side(style="thin", color="D0D0D0"),
    right=Side(style="thin", color="D0D0D0"),
    top=Side(style="thin", color="D0D0D0"),
    bottom=Side(style="thin", color="D0D0D0"),
)

GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
YELLOW_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
RED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
LIGHT_BLUE_FILL = PatternFill(start_color="D6E4F0", end_color="D6E4F0", fill_type="solid")

SCORE_SHEET_COLS = [
    ("Rank", "Rank"), ("Ticker", "Ticker"),
    ("total_score", "Total"), ("value_score", "Value"),
    ("momentum_score", "Momentum"), ("quality_score", "Quality"),
    ("risk_score", "Risk"),
    ("peer_scope", "Peer_Scope"), ("peer_count", "Peers"),
    ("peer_complete_pct", "Peers_Complete_%"),
    ("low_confidence", "Low_Confidence"), ("scope_fallback", "Scope_Fallback"),
] + [(f"{m}_score", f"{m}_pct") for m in METRIC_COLS]

COMPOSITE_COLS = {"total_score", "value_score", "momentum_score",
                  "quality_score", "risk_score"}


def _style_header_row(ws, row, n_cols):
    for c in range(1, n_cols + 1):
        cell = ws.cell(row=row, column=c)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = THIN_BORDER


def _style_data_cell(ws, row, col, border=True):
    cell = ws.cell(row=row, column=col)
    cell.font = DATA_FONT
    cell.alignment = Alignment(horizontal="center", vertical="center")
    if border:
        cell.border = THIN_BORDER
    return cell


def _auto_width(ws, min_width=8, max_width=25):
    for col_cells in ws.columns:
        col_letter = get_column_letter(col_cells[0].column)
        max_len = 0
        for cell in col_cells:
            if cell.value is not None:
                max_len = max(max_len, len(str(cell.value)))
        ws.column_dimensions[col_letter].width = min(max(max_len + 2, min_width), max_width)


def _cell_value(v):
    if v is None:
        return None
    if isinstance(v, (float, np.floating)):
        return None if np.isnan(v) else float(v)
    if isinstance(v, np.integer):
        return int(v)
    if isinstance(v, np.bool_):
        return bool(v)
    return v


def _score_fill(score):
    if score is None:
        return None
    if score >= 80:
        return GREEN_FILL
    if score >= 60:
        return YELLOW_FILL
    return RED_FILL


def _write_table(ws, start_row: int, df: pd.DataFrame, col_map, decimals: int = 2):
    """Header plus data rows; returns the next free row."""
    for c, (_, header) in enumerate(col_map, 1):
        ws.cell(row=start_row, column=c, value=header)
    _style_header_row(ws, start_row, len(col_map))
    r = start_row
    for r, row in enumerate(df.to_dict("records"), start_row + 1):
        for c, (src, _) in enumerate(col_map, 1):
            v = _cell_value(row.get(src))
            if isinstance(v, float):
                v = round(v, decimals)
            cell = _style_data_cell(ws, r, c)
            cell.value = v
    return r + 1


# =========================================================================
# Sheets
# =========================================================================
def write_scores_sheet(wb: Workbook, df: pd.DataFrame, profile_name: str):
    ws = wb.active
    ws.title = "Scores"
    ws.cell(row=1, column=1, value=f"FACTOR SCORES ({profile_name})").font = TITLE_FONT

    header_row = 3
    _write_table(ws, header_row, df, SCORE_SHEET_COLS, decimals=1)

    for r in range(header_row + 1, header_row + 1 + len(df)):
        for c, (src, _) in enumerate(SCORE_SHEET_COLS, 1):
            if src not in COMPOSITE_COLS:
                continue
            fill = _score_fill(ws.cell(row=r, column=c).value)
            if fill is not None:
                ws.cell(row=r, column=c).fill = fill
    ws.freeze_panes = ws.cell(row=header_row + 1, column=3)
    _auto_width(ws)
    return ws


def write_betas_sheet(wb: Workbook, betas: pd.DataFrame, exposure: Optional[dict]):
    ws = wb.create_sheet("Betas")
    ws.cell(row=1, column=1, value="BETA ESTIMATES").font = TITLE_FONT
    col_map = [("ticker", "Ticker"), ("beta_1y", "Beta_1Y"), ("beta_3y", "Beta_3Y"),
               ("beta_5y", "Beta_5Y"), ("true_beta", "True_Beta"), ("is_cash", "Cash")]
    row = _write_table(ws, 3, betas, col_map)

    if exposure:
        row += 1
        ws.cell(row=row, column=1, value="PORTFOLIO BETA EXPOSURE").font = SUBTITLE_FONT
        row += 1
        for key, label in [("true_beta", "True Beta"), ("beta_1y", "1Y Beta"),
                           ("beta_3y", "3Y Beta"), ("beta_5y", "5Y Beta")]:
            ws.cell(row=row, column=1, value=label).font = DATA_FONT
            cell = _style_data_cell(ws, row, 2)
            cell.value = round(exposure[key], 3)
            cell.fill = LIGHT_BLUE_FILL
            row += 1
        if exposure.get("unmatched"):
            ws.cell(row=row, column=1, value="Unmatched").font = DATA_FONT
            ws.cell(row=row, column=2, value=", ".join(exposure["unmatched"])).font = DATA_FONT
    _auto_width(ws)
    return ws


def write_risk_sheet(wb: Workbook, risk: dict):
    ws = wb.create_sheet("Risk")
    ws.cell(row=1, column=1, value="PORTFOLIO RISK METRICS").font = TITLE_FONT
    rows = [
        ("Sharpe Ratio", risk.get("sharpe_ratio")),
        ("Annualized Volatility (%)", risk.get("annualized_volatility")),
        ("VaR 95% (%)", risk.get("var95")),
        ("Max Drawdown (%)", risk.get("max_drawdown")),
        ("Days of Data", risk.get("days_of_data")),
        ("Required Days", risk.get("requires_days")),
    ]
    ws.cell(row=3, column=1, value="Metric")
    ws.cell(row=3, column=2, value="Value")
    _style_header_row(ws, 3, 2)
    for r, (label, v) in enumerate(rows, 4):
        ws.cell(row=r, column=1, value=label).font = DATA_FONT
        cell = _style_data_cell(ws, r, 2)
        cell.value = round(v, 4) if isinstance(v, float) else (v if v is not None else "n/a")
    _auto_width(ws, max_width=30)
    return ws


def write_performance_sheet(wb: Workbook, perf: pd.DataFrame, totals: dict):
    ws = wb.create_sheet("Performance")
    ws.cell(row=1, column=1, value="HOLDING PERFORMANCE").font = TITLE_FONT
    col_map = [("ticker", "Ticker"), ("weight", "Weight_%")] + [
        (c, c.replace("return_", "Ret_").replace("contribution_", "Contrib_").upper())
        for c in perf.columns if c.startswith(("return_", "contribution_"))]
    row = _write_table(ws, 3, perf, col_map)

    ws.cell(row=row, column=1, value="TOTAL").font = SUBTITLE_FONT
    for c, (src, _) in enumerate(col_map, 1):
        key = f"total_{src}"
        if key in totals:
            cell = _style_data_cell(ws, row, c)
            cell.value = round(totals[key], 3)
            cell.fill = LIGHT_BLUE_FILL
    _auto_width(ws)
    return ws


def write_report(path: Path, scores: pd.DataFrame, profile_name: str,
                 betas: pd.DataFrame, exposure: Optional[dict], risk: dict,
                 perf: Optional[pd.DataFrame] = None,
                 perf_totals: Optional[dict] = None) -> Path:
    """Write the full workbook to ``path``."""
    wb = Workbook()
    write_scores_sheet(wb, scores, profile_name)
    write_betas_sheet(wb, betas, exposure)
    write_risk_sheet(wb, risk)
    if perf is not None and not perf.empty:
        write_performance_sheet(wb, perf, perf_totals or {})
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(str(path))
    return path
