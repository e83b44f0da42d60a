import argparse
import math
from typing import Sequence

from damp_grid.article_refs import LAID_OUT_STRUCTURE, SPARSE_BIT_VECTORS
from damp_grid.encoding.bitarray import BitArray
from damp_grid.layout import AdaptiveConfig, LayoutConfig, LayoutEngine, LayoutResult, PolishConfig
from damp_grid.logging import LOGGER

LOG_INTERVAL_DEFAULT = 1
LOG_INTERVAL_INIT = 1
LOG_INTERVAL_LAYOUT_EPOCH = 10
LOG_INTERVAL_LAYOUT_BATCH = 50
LOG_INTERVAL_LAYOUT_GATE = 25
LOG_INTERVAL_LAYOUT_VISUAL = 1

DEMO_ANGLE_COUNT = 151
DEMO_ANGLE_STEP = 1.0
DEMO_ARC_WIDTHS = (90.0, 45.0, 22.5, 11.25, 5.625)
DEMO_STEP_RATIO = 0.5

LAYOUT_FAR_RADIUS = 8
LAYOUT_EPOCHS = 150
LAYOUT_MIN_SIM = 0.25
LAYOUT_LAMBDA_START = 0.30
LAYOUT_LAMBDA_END = 0.90
LAYOUT_ETA = 10.0
LAYOUT_MAX_BATCH_FRAC = 0.30
LAYOUT_MARGIN = 0.15
LAYOUT_SEED = 42

LAYOUT_POLISH_EPOCHS = 40
LAYOUT_POLISH_FAR_RADIUS = 2
LAYOUT_POLISH_DELTA_RADIUS = 4

LAYOUT_ADAPTIVE_END_RADIUS = 1
LAYOUT_ADAPTIVE_SWAP_RATIO = 0.05
LAYOUT_ADAPTIVE_RADIUS_DECAY = 0.5
LAYOUT_ADAPTIVE_LAMBDA_STEP = 0.1

LOG_INTERVALS = {
    "layout.backend": LOG_INTERVAL_INIT,
    "layout.adaptive.config": LOG_INTERVAL_INIT,
    "layout.adaptive.radius": LOG_INTERVAL_INIT,
    "layout.adaptive.stalled": LOG_INTERVAL_INIT,
    "layout.backend.upload": LOG_INTERVAL_INIT,
    "layout.batch.select": LOG_INTERVAL_LAYOUT_BATCH,
    "layout.codes": LOG_INTERVAL_INIT,
    "layout.demo.codes": LOG_INTERVAL_INIT,
    "layout.epoch": LOG_INTERVAL_LAYOUT_EPOCH,
    "layout.gpu.context_failed": LOG_INTERVAL_INIT,
    "layout.gpu.enabled": LOG_INTERVAL_INIT,
    "layout.gpu.fallback": LOG_INTERVAL_INIT,
    "layout.gpu.import_failed": LOG_INTERVAL_INIT,
    "layout.gpu.init_failed": LOG_INTERVAL_INIT,
    "layout.gpu.released": LOG_INTERVAL_INIT,
    "layout.gpu.tensor.enabled": LOG_INTERVAL_INIT,
    "layout.gpu.tensor.unavailable": LOG_INTERVAL_INIT,
    "layout.grid": LOG_INTERVAL_INIT,
    "layout.init": LOG_INTERVAL_INIT,
    "layout.phase.converged": LOG_INTERVAL_INIT,
    "layout.phase.done": LOG_INTERVAL_INIT,
    "layout.phase.start": LOG_INTERVAL_INIT,
    "layout.run.done": LOG_INTERVAL_INIT,
    "layout.sim_cache.config": LOG_INTERVAL_INIT,
    "layout.sim_cache.done": LOG_INTERVAL_INIT,
    "layout.sim_cache.gated": LOG_INTERVAL_LAYOUT_GATE,
    "layout.sim_cache.parallel": LOG_INTERVAL_INIT,
    "layout.sim_cache.similarity": LOG_INTERVAL_INIT,
    "layout.sim_cache.start": LOG_INTERVAL_INIT,
    "layout.similarity": LOG_INTERVAL_INIT,
    "layout.thresholds": LOG_INTERVAL_INIT,
    "layout.thresholds.flat": LOG_INTERVAL_INIT,
    "layout.visual": LOG_INTERVAL_LAYOUT_VISUAL,
}


def configure_logging() -> None:
    LOGGER.configure_intervals(LOG_INTERVALS, default_interval=LOG_INTERVAL_DEFAULT)


def _angle_diff(a: float) -> float:
    x = (a + 180.0) % 360.0
    return x - 180.0


def encode_angle(angle: float, *, arc_widths: Sequence[float] = DEMO_ARC_WIDTHS) -> BitArray:
    """Sliding-window code of an angle in degrees: one bit per arc detector."""
    layers = len(arc_widths)
    sizes = [max(1, math.ceil(360.0 / (width * DEMO_STEP_RATIO))) for width in arc_widths]
    code = BitArray(sum(sizes))
    offset = 0
    for layer, (width, count) in enumerate(zip(arc_widths, sizes)):
        step = width * DEMO_STEP_RATIO
        phase = layer * step / layers
        half = width / 2.0
        for i in range(count):
            diff = _angle_diff(angle - (i * step + phase))
            if -half <= diff < half:
                code.set(offset + i, 1)
        offset += count
    return code


def build_demo_codes(count: int, step: float) -> list[tuple[float, BitArray]]:
    codes = [(i * step, encode_angle(i * step)) for i in range(count)]
    LOGGER.event(
        "layout.demo.codes",
        section=SPARSE_BIT_VECTORS,
        data={"count": count, "step": step, "code_length": len(codes[0][1])},
    )
    return codes


def format_grid(result: LayoutResult) -> str:
    cells = result.label_grid()
    width = max(
        (len(f"{label:g}") for row in cells for label in row if label is not None),
        default=1,
    )
    lines = []
    for row in cells:
        parts = ["." * width if label is None else f"{label:g}".rjust(width) for label in row]
        lines.append(" ".join(parts))
    return "\n".join(lines)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DAMP grid layout demo")
    parser.add_argument("--count", type=int, default=DEMO_ANGLE_COUNT)
    parser.add_argument("--step", type=float, default=DEMO_ANGLE_STEP, help="angle step in degrees")
    parser.add_argument("--epochs", type=int, default=LAYOUT_EPOCHS)
    parser.add_argument("--far-radius", type=int, default=LAYOUT_FAR_RADIUS)
    parser.add_argument("--delta-radius", type=int, default=None)
    parser.add_argument("--min-sim", type=float, default=LAYOUT_MIN_SIM)
    parser.add_argument("--eta", type=float, default=LAYOUT_ETA, help="0 disables the threshold, inf is a hard cutoff")
    parser.add_argument("--margin", type=float, default=LAYOUT_MARGIN)
    parser.add_argument("--seed", type=int, default=LAYOUT_SEED)
    parser.add_argument("--polish-epochs", type=int, default=LAYOUT_POLISH_EPOCHS)
    parser.add_argument("--adaptive", action="store_true", help="shrink radius and raise lambda when swaps stall")
    parser.add_argument("--backend", choices=["sequential", "parallel"], default="sequential")
    parser.add_argument("--device", choices=["auto", "gl", "tensor"], default="auto")
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--rerun", action="store_true", help="stream events to a rerun viewer")
    parser.add_argument("--quiet", action="store_true")
    return parser


def main() -> None:
    args = _build_arg_parser().parse_args()
    configure_logging()
    if args.quiet:
        LOGGER.set_console(False)
    if args.rerun:
        LOGGER.init_rerun("damp_grid_demo", spawn=True)
    adaptive = None
    if args.adaptive:
        adaptive = AdaptiveConfig(
            end_radius=LAYOUT_ADAPTIVE_END_RADIUS,
            swap_ratio_trigger=LAYOUT_ADAPTIVE_SWAP_RATIO,
            radius_decay=LAYOUT_ADAPTIVE_RADIUS_DECAY,
            lambda_step=LAYOUT_ADAPTIVE_LAMBDA_STEP,
        )
    polish = None
    if args.polish_epochs > 0:
        polish = PolishConfig(
            epochs=args.polish_epochs,
            far_radius=LAYOUT_POLISH_FAR_RADIUS,
            delta_radius=LAYOUT_POLISH_DELTA_RADIUS,
        )
    config = LayoutConfig(
        far_radius=args.far_radius,
        epochs=args.epochs,
        min_sim=args.min_sim,
        lambda_start=LAYOUT_LAMBDA_START,
        lambda_end=LAYOUT_LAMBDA_END,
        eta=args.eta,
        max_batch_frac=LAYOUT_MAX_BATCH_FRAC,
        delta_radius=args.delta_radius,
        margin=args.margin,
        seed=args.seed,
        workers=args.workers,
        polish=polish,
        adaptive=adaptive,
    )
    codes = build_demo_codes(args.count, args.step)
    with LayoutEngine(codes, config, backend=args.backend, device=args.device) as engine:
        result = engine.run()
    LOGGER.event(
        "layout.demo.result",
        section=LAID_OUT_STRUCTURE,
        data={
            "state": result.state.value,
            "swaps": result.total_swaps,
            "initial_energy": result.initial_energy,
            "final_energy": result.final_energy,
            "device": result.device,
        },
    )
    print(format_grid(result))


if __name__ == "__main__":
    main()
