from __future__ import annotations

import io
from typing import Any, Dict, List

import matplotlib
matplotlib.use("Agg")  # headless rendering inside the API worker
import matplotlib.pyplot as plt

# Labels as <text> elements, not glyph paths.
matplotlib.rcParams["svg.fonttype"] = "none"

MAX_BARS = 12
BAR_COLOR = "#0f766e"
GRID_COLOR = "#e2e8f0"
TEXT_MUTED = "#64748b"
DONUT_COLORS = {
    "first_only": "#60a5fa",
    "first_second": "#34d399",
    "all_three": "#f59e0b",
}
FALLBACK_COLORS = ["#60a5fa", "#34d399", "#f59e0b", "#f472b6", "#a78bfa"]


def short_label(label: str) -> str:
    if len(label) <= 10:
        return label
    return f"{label[:10]}…"


def _to_svg(fig) -> bytes:
    buf = io.BytesIO()
    fig.savefig(buf, format="svg", bbox_inches="tight")
    plt.close(fig)
    return buf.getvalue()


def _empty(ax, message: str) -> None:
    ax.text(0.5, 0.5, message, ha="center", va="center", color=TEXT_MUTED, transform=ax.transAxes)
    ax.set_axis_off()


def bar_chart_svg(items: List[Dict[str, Any]], title: str = "Referrals by category") -> bytes:
    """Vertical bars for label/value items; only the first 12 are drawn."""
    bars = items[:MAX_BARS]
    fig, ax = plt.subplots(figsize=(8, 3.5))
    if not bars:
        _empty(ax, "No rows match your filters.")
    else:
        labels = [short_label(str(i["label"])) for i in bars]
        values = [int(i["value"]) for i in bars]
        positions = range(len(bars))
        ax.bar(positions, values, color=BAR_COLOR, edgecolor="white")
        ax.set_xticks(list(positions))
        ax.set_xticklabels(labels, rotation=30, ha="right", fontsize=8, color=TEXT_MUTED)
        ax.set_ylim(0, max(max(values), 1))
        ax.grid(True, axis="y", color=GRID_COLOR)
        ax.set_axisbelow(True)
        for spine in ("top", "right"):
            ax.spines[spine].set_visible(False)
    ax.set_title(title, fontsize=11, loc="left")
    fig.tight_layout()
    return _to_svg(fig)


def donut_chart_svg(items: List[Dict[str, Any]], title: str = "Communication completion ratio") -> bytes:
    total = sum(int(i["value"]) for i in items)
    slices = [i for i in items if int(i["value"]) > 0]
    fig, ax = plt.subplots(figsize=(4, 4))
    if not slices:
        _empty(ax, "No rows match your filters.")
    else:
        colors = [
            DONUT_COLORS.get(str(s.get("key")), FALLBACK_COLORS[n % len(FALLBACK_COLORS)])
            for n, s in enumerate(slices)
        ]
        ax.pie(
            [int(s["value"]) for s in slices],
            labels=[str(s["label"]) for s in slices],
            colors=colors,
            startangle=90,
            counterclock=False,
            wedgeprops={"width": 0.35, "edgecolor": "white"},
            textprops={"fontsize": 8, "color": TEXT_MUTED},
        )
        ax.text(0, 0.05, str(total), ha="center", va="center", fontsize=18, fontweight="bold", color="#0f172a")
        ax.text(0, -0.15, "referrals", ha="center", va="center", fontsize=9, color=TEXT_MUTED)
        ax.set_aspect("equal")
    ax.set_title(title, fontsize=11)
    fig.tight_layout()
    return _to_svg(fig)


def line_chart_svg(points: List[Dict[str, Any]], title: str = "Week-by-week trend") -> bytes:
    """Weekly counts; x labels show MM-DD of each week start."""
    fig, ax = plt.subplots(figsize=(8, 3.5))
    if not points:
        _empty(ax, "No rows with valid dates match your filters.")
    else:
        xs = list(range(len(points)))
        ys = [int(p["count"]) for p in points]
        ax.plot(xs, ys, marker="o", linewidth=2, color=BAR_COLOR, markersize=6,
                markerfacecolor="white", markeredgewidth=2)
        ax.set_xticks(xs)
        ax.set_xticklabels([str(p["week"])[5:] for p in points], rotation=30, ha="right",
                           fontsize=8, color=TEXT_MUTED)
        ax.set_ylim(0, max(max(ys), 1))
        ax.grid(True, linestyle="--", color=GRID_COLOR)
        for spine in ("top", "right"):
            ax.spines[spine].set_visible(False)
    ax.set_title(title, fontsize=11, loc="left")
    fig.tight_layout()
    return _to_svg(fig)
