"""CSV and printable HTML renderings of an analytics snapshot."""

from __future__ import annotations

import csv
import html
import io
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from services.timestamps import utcnow

CSV_BOM = "\ufeff"


def export_filename(extension: str, now: Optional[datetime] = None) -> str:
    current = now or utcnow()
    return f"reporte-analitico-{current.date().isoformat()}.{extension}"


def format_hours(hours: float) -> str:
    if hours < 1:
        return f"{round(hours * 60)} min"
    if hours < 24:
        return f"{hours:.1f} hrs"
    return f"{hours / 24:.1f} días"


def render_analytics_csv(snapshot: Dict[str, Any], now: Optional[datetime] = None) -> str:
    current = now or utcnow()
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    def section(title: str, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
        writer.writerow([f"=== {title} ==="])
        if header:
            writer.writerow(header)
        for row in rows:
            writer.writerow(row)
        writer.writerow([])

    writer.writerow([f"REPORTE ANALÍTICO - {current.date().isoformat()}"])
    writer.writerow([])
    section(
        "MÉTRICAS DE RENDIMIENTO",
        [],
        [
            ["Tasa de Resolución", f"{snapshot['resolution_rate']:.1f}%"],
            ["Total Resueltas", snapshot["total_resolved"]],
            ["Total Pendientes", snapshot["total_pending"]],
            ["Tiempo Promedio Respuesta (horas)", f"{snapshot['avg_response_time_hours']:.2f}"],
            ["Respuestas por Solicitud", f"{snapshot['avg_responses_per_request']:.2f}"],
            ["Tasa Mejor Respuesta", f"{snapshot['best_answer_rate']:.1f}%"],
        ],
    )
    section("TEMÁTICAS MÁS DEMANDADAS", ["Categoría", "Cantidad"], _pairs(snapshot["category_counts"]))
    section("SOLICITUDES POR PAÍS", ["País", "Cantidad"], _pairs(snapshot["country_counts"]))
    section("EDITORIALES/REVISTAS", ["Editorial", "Cantidad"], _pairs(snapshot["journal_counts"]))
    section("DISTRIBUCIÓN POR NIVEL", ["Nivel", "Cantidad"], _pairs(snapshot["level_distribution"]))
    section(
        "USUARIOS MÁS ACTIVOS",
        ["Usuario", "Solicitudes", "Respuestas", "Total"],
        [[u["name"], u["requests"], u["responses"], u["total"]] for u in snapshot["top_active_users"]],
    )
    section("DISTRIBUCIÓN POR INSTITUCIÓN", ["Institución", "Usuarios"], _pairs(snapshot["institution_distribution"]))
    section(
        "ECONOMÍA DE PUNTOS",
        [],
        [
            ["Puntos Totales", snapshot["total_points"]],
            ["Promedio por Usuario", f"{snapshot['avg_points_per_user']:.0f}"],
        ],
    )
    section(
        "FLUJO DE PUNTOS",
        ["Mes", "Ganados", "Gastados"],
        [[p["month"], p["earned"], p["spent"]] for p in snapshot["points_flow"]],
    )
    section("TENDENCIA MENSUAL", ["Mes", "Solicitudes"], [[m["month"], m["count"]] for m in snapshot["monthly_trend"]])
    section("CRECIMIENTO DE USUARIOS", ["Mes", "Nuevos Usuarios"], [[m["month"], m["count"]] for m in snapshot["user_growth"]])
    section("ACTIVIDAD POR HORA", ["Hora", "Solicitudes"], [[h["hour"], h["count"]] for h in snapshot["hourly_distribution"]])
    section("ACTIVIDAD POR DÍA", ["Día", "Solicitudes"], [[d["day"], d["count"]] for d in snapshot["daily_distribution"]])

    urgent = snapshot["urgent_analysis"]
    doi = snapshot["doi_analysis"]
    writer.writerow(["=== ANÁLISIS ADICIONAL ==="])
    writer.writerows(
        [
            ["Solicitudes Urgentes", urgent["urgent_count"]],
            ["Solicitudes Normales", urgent["normal_count"]],
            ["Tasa Resolución Urgentes", f"{urgent['urgent_resolution_rate']:.1f}%"],
            ["Tasa Resolución Normales", f"{urgent['normal_resolution_rate']:.1f}%"],
            ["Con DOI", doi["with_doi"]],
            ["Sin DOI", doi["without_doi"]],
            ["Comentarios Promedio por Solicitud", f"{snapshot['avg_comments_per_request']:.2f}"],
        ]
    )
    return CSV_BOM + buffer.getvalue()


def _pairs(items: List[Dict[str, Any]]) -> List[List[Any]]:
    return [[item["name"], item["value"]] for item in items]


def _e(value: Any) -> str:
    return html.escape(str(value), quote=True)


def _table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    head = "".join(f"<th>{_e(header)}</th>" for header in headers)
    body = "".join("<tr>" + "".join(f"<td>{_e(cell)}</td>" for cell in row) + "</tr>" for row in rows)
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _section(title: str, content: str) -> str:
    return f'<div class="section"><h2>{_e(title)}</h2>{content}</div>'


_STYLE = """
* { margin: 0; padding: 0; box-sizing: border-box; }
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; padding: 40px; color: #1a1a1a; line-height: 1.5; }
h1 { font-size: 24px; margin-bottom: 8px; color: #0f172a; }
h2 { font-size: 16px; margin: 24px 0 12px; padding-bottom: 8px; border-bottom: 2px solid #3b82f6; color: #3b82f6; }
.date { color: #64748b; margin-bottom: 24px; font-size: 14px; }
.metrics-grid { display: grid; grid-template-columns: repeat(4, 1fr); gap: 16px; margin-bottom: 24px; }
.metric-card { background: #f8fafc; border: 1px solid #e2e8f0; border-radius: 8px; padding: 16px; text-align: center; }
.metric-value { font-size: 28px; font-weight: 700; color: #3b82f6; }
.metric-label { font-size: 12px; color: #64748b; margin-top: 4px; }
table { width: 100%; border-collapse: collapse; margin-bottom: 16px; font-size: 13px; }
th, td { padding: 8px 12px; text-align: left; border-bottom: 1px solid #e2e8f0; }
th { background: #f1f5f9; font-weight: 600; color: #475569; }
.two-col { display: grid; grid-template-columns: 1fr 1fr; gap: 24px; }
.section { margin-bottom: 32px; }
.footer { margin-top: 40px; padding-top: 16px; border-top: 1px solid #e2e8f0; text-align: center; color: #94a3b8; font-size: 12px; }
@media print { body { padding: 20px; } }
"""


def render_analytics_html(snapshot: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Self-contained printable report. Every interpolated value is escaped."""
    current = now or utcnow()
    cards = [
        (f"{snapshot['resolution_rate']:.1f}%", "Tasa de Resolución"),
        (format_hours(snapshot["avg_response_time_hours"]), "Tiempo Promedio Respuesta"),
        (f"{snapshot['avg_responses_per_request']:.1f}", "Respuestas/Solicitud"),
        (f"{snapshot['best_answer_rate']:.1f}%", "Tasa Mejor Respuesta"),
    ]
    metrics = "".join(
        f'<div class="metric-card"><div class="metric-value">{_e(value)}</div>'
        f'<div class="metric-label">{_e(label)}</div></div>'
        for value, label in cards
    )
    growth = {item["month"]: item["count"] for item in snapshot["user_growth"]}
    urgent = snapshot["urgent_analysis"]
    doi = snapshot["doi_analysis"]

    parts = [
        f'<div class="metrics-grid">{metrics}</div>',
        '<div class="two-col">',
        _section("Temáticas Más Demandadas", _table(["Categoría", "Cantidad"], _pairs(snapshot["category_counts"]))),
        _section("Solicitudes por País", _table(["País", "Cantidad"], _pairs(snapshot["country_counts"]))),
        "</div>",
    ]
    if snapshot["journal_counts"]:
        parts.append(
            _section(
                "Editoriales/Revistas Más Solicitadas",
                _table(["Editorial", "Solicitudes"], _pairs(snapshot["journal_counts"])),
            )
        )
    parts.append(
        _section(
            "Usuarios Más Activos (Top 10)",
            _table(
                ["Usuario", "Solicitudes", "Respuestas", "Total"],
                [[u["name"], u["requests"], u["responses"], u["total"]] for u in snapshot["top_active_users"]],
            ),
        )
    )
    parts.extend(
        [
            '<div class="two-col">',
            _section("Distribución por Nivel", _table(["Nivel", "Usuarios"], _pairs(snapshot["level_distribution"]))),
            _section(
                "Economía de Puntos",
                _table(
                    ["Métrica", "Valor"],
                    [
                        ["Puntos Totales", snapshot["total_points"]],
                        ["Promedio/Usuario", f"{snapshot['avg_points_per_user']:.0f}"],
                    ],
                ),
            ),
            "</div>",
            '<div class="two-col">',
            _section(
                "Tendencia Mensual",
                _table(
                    ["Mes", "Solicitudes", "Nuevos Usuarios"],
                    [[m["month"], m["count"], growth.get(m["month"], 0)] for m in snapshot["monthly_trend"]],
                ),
            ),
            _section(
                "Análisis Adicional",
                _table(
                    ["Métrica", "Valor"],
                    [
                        [
                            "Solicitudes Urgentes",
                            f"{urgent['urgent_count']} ({urgent['urgent_resolution_rate']:.0f}% resueltas)",
                        ],
                        [
                            "Solicitudes Normales",
                            f"{urgent['normal_count']} ({urgent['normal_resolution_rate']:.0f}% resueltas)",
                        ],
                        ["Con DOI", doi["with_doi"]],
                        ["Sin DOI", doi["without_doi"]],
                        ["Comentarios/Solicitud", f"{snapshot['avg_comments_per_request']:.2f}"],
                    ],
                ),
            ),
            "</div>",
        ]
    )
    if snapshot["institution_distribution"]:
        parts.append(
            _section(
                "Distribución por Institución",
                _table(["Institución", "Usuarios"], _pairs(snapshot["institution_distribution"])),
            )
        )

    generated = current.strftime("%Y-%m-%d %H:%M UTC")
    return (
        '<!DOCTYPE html><html lang="es"><head><meta charset="UTF-8">'
        f"<title>Reporte Analítico - {_e(current.date().isoformat())}</title>"
        f"<style>{_STYLE}</style></head><body>"
        "<h1>Reporte Analítico</h1>"
        f'<p class="date">Generado el {_e(generated)}</p>'
        + "".join(parts)
        + '<div class="footer"><p>Reporte generado automáticamente por el Sistema de Analíticas</p></div>'
        "<script>window.onload = function() { window.print(); }</script>"
        "</body></html>"
    )
