import argparse
import random
import sys
import time
from pathlib import Path


def _add_backend_to_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    backend_root = repo_root / "backend"
    if str(backend_root) not in sys.path:
        sys.path.insert(0, str(backend_root))


def _make_strokes(count: int, row_width: float, row_height: float, seed: int):
    from inkrow.models import ElementGeometry  # type: ignore

    rng = random.Random(seed)
    step = row_width / max(count, 1)
    strokes = []
    for i in range(count):
        w = rng.uniform(10, max(12.0, step * 0.8))
        h = rng.uniform(20, row_height * 0.5)
        x = i * step
        y = (row_height - h) / 2
        points = [(0.0, 0.0), (w / 2, h), (w, 0.0)]
        strokes.append(ElementGeometry(id=f"s{i}", x=x, y=y, width=w, height=h, points=points))
    return strokes


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Benchmark row tiling on synthetic strokes."
    )
    parser.add_argument(
        "--widths",
        default="200,800,2000,4000",
        help="行宽列表，逗号分隔（默认：200,800,2000,4000）",
    )
    parser.add_argument("--strokes", type=int, default=40, help="每行笔画数（默认：40）")
    parser.add_argument("--repeat", type=int, default=5, help="每个宽度重复次数（默认：5）")
    parser.add_argument("--seed", type=int, default=7, help="随机种子")
    parser.add_argument(
        "--config",
        default="config/inkrow_runtime.yaml",
        help="运行期配置文件（默认：config/inkrow_runtime.yaml）",
    )
    args = parser.parse_args()

    _add_backend_to_path()
    from inkrow.config import reload_config  # type: ignore
    from inkrow.ocr import PillowRasterizer, TileExtractor  # type: ignore
    from inkrow.rows import RowStore, StrokeGeometryIndex  # type: ignore

    config = reload_config(args.config)
    extractor = TileExtractor(PillowRasterizer(), config)
    budget = config.tiling.budget_ms

    try:
        widths = [float(w) for w in args.widths.split(",") if w.strip()]
    except ValueError:
        print(f"无法解析行宽: {args.widths}")
        return 1

    over_budget = 0
    for width in widths:
        store = RowStore(config)
        geometry = StrokeGeometryIndex(store)
        for stroke in _make_strokes(args.strokes, width, store.row_height, args.seed):
            geometry.add(stroke)
        row = store.get_row("row-0")
        elements = geometry.get_geometry(row.element_ids)

        timings = []
        tiles = []
        for _ in range(args.repeat):
            start = time.perf_counter()
            tiles = extractor.extract(row, elements)
            timings.append((time.perf_counter() - start) * 1000)

        worst = max(timings)
        if worst > budget:
            over_budget += 1
        print(
            f"width={width:.0f}: tiles={len(tiles)} "
            f"avg={sum(timings) / len(timings):.1f}ms max={worst:.1f}ms "
            f"budget={budget:.0f}ms{' OVER' if worst > budget else ''}"
        )

    return 1 if over_budget else 0


if __name__ == "__main__":
    raise SystemExit(main())
