"""HUD overlay and diagnostic card drawn on a matplotlib figure.

Sizes are given in output pixels and converted to figure fractions so the
overlay looks the same at any resolution.
"""

from matplotlib.figure import Figure
from matplotlib.patches import FancyBboxPatch, Rectangle
import matplotlib.patheffects as path_effects

from routefilm.animation.telemetry import HudProps
from routefilm.render.commands import Diagnostic

HUD_COLORS = {
    "primary": "#00f2ff",
    "secondary": "#ff0055",
    "glass": (16 / 255, 20 / 255, 24 / 255, 0.75),
    "border": (0.0, 242 / 255, 1.0, 0.3),
    "label": "#8899a6",
    "track": (1.0, 1.0, 1.0, 0.1),
}


def _pixel_size(fig: Figure) -> tuple[float, float]:
    width, height = fig.get_size_inches() * fig.dpi
    return float(width), float(height)


def draw_progress_bar(fig: Figure, progress: float) -> None:
    """Thin bar centred at the top, 60% of the width, filled to ``progress`` percent."""
    width, height = _pixel_size(fig)
    bar_height = 4 / height
    bottom = 1 - 40 / height - bar_height
    fill = 0.6 * min(max(progress, 0.0), 100.0) / 100.0

    fig.add_artist(Rectangle((0.2, bottom), 0.6, bar_height, transform=fig.transFigure, color=HUD_COLORS["track"]))
    fig.add_artist(Rectangle((0.2, bottom), fill, bar_height, transform=fig.transFigure, color=HUD_COLORS["primary"]))


def draw_stats_panel(fig: Figure, props: HudProps) -> None:
    """Glass card in the bottom-left corner with distance travelled and time remaining."""
    width, height = _pixel_size(fig)
    left, bottom = 40 / width, 40 / height
    panel_w, panel_h = 300 / width, 110 / height
    pad_x, pad_y = 20 / width, 20 / height

    fig.add_artist(
        FancyBboxPatch(
            (left, bottom),
            panel_w,
            panel_h,
            boxstyle="round,pad=0.0,rounding_size=0.01",
            transform=fig.transFigure,
            facecolor=HUD_COLORS["glass"],
            edgecolor=HUD_COLORS["border"],
            linewidth=1,
        )
    )

    glow = [path_effects.withStroke(linewidth=3, foreground=(0.0, 242 / 255, 1.0, 0.35))]
    top = bottom + panel_h - pad_y
    columns = ((left + pad_x, "DIST", f"{props.distance} KM"), (left + panel_w / 2, "ETE", props.time))
    for x, label, value in columns:
        fig.text(x, top, label, color=HUD_COLORS["label"], fontsize=9, va="top", family="monospace")
        fig.text(
            x,
            top - 18 / height,
            value,
            color=HUD_COLORS["primary"],
            fontsize=18,
            fontweight="bold",
            va="top",
            family="monospace",
            path_effects=glow,
        )
    fig.text(left + pad_x, bottom + pad_y, "● RECORDING TELEMETRY", color=HUD_COLORS["secondary"], fontsize=7)


def draw_hud(fig: Figure, props: HudProps) -> None:
    draw_progress_bar(fig, props.progress)
    draw_stats_panel(fig, props)


def draw_diagnostic(fig: Figure, diagnostic: Diagnostic) -> None:
    """Replace the figure contents with a static error card."""
    fig.clear()
    fig.set_facecolor("#ffebee")
    fig.text(0.5, 0.6, f"⚠ {diagnostic.title}", ha="center", va="center", fontsize=28, color="#c62828", weight="bold")
    fig.text(0.5, 0.48, diagnostic.message, ha="center", va="center", fontsize=14, color="#c62828", wrap=True)
    if diagnostic.route_id:
        fig.text(0.5, 0.4, f"Route ID: {diagnostic.route_id}", ha="center", va="center", fontsize=12, color="#c62828")
