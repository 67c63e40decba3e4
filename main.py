"""Command line entry point: convert one image file into pixel art."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pixelart.config import load_settings
from pixelart.errors import PixelArtError
from pixelart.io_utils import encode_image
from pixelart.models import COLOR_MODES, INTERPOLATIONS, PALETTE_METHODS, QUALITIES, ConversionParams
from pixelart.tasks import TaskManager

log = logging.getLogger("pixelart")


def setup_logging(verbosity: int = 0) -> None:
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(verbosity, 2)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="画像をドット絵に変換します。")
    ap.add_argument("input", type=Path, help="入力画像")
    ap.add_argument("output", type=Path, help="出力先（拡張子で形式を決定）")
    ap.add_argument("--factor", type=float, default=50.0, help="縮小率(%%) 1-200")
    ap.add_argument("--interpolation", default="nearest_neighbor", help="/".join(INTERPOLATIONS))
    ap.add_argument("--mode", default="none", help="/".join(COLOR_MODES))
    ap.add_argument("--ratio", type=float, default=1.0, help="ディザ強度 0.1-5.0")
    ap.add_argument("--quality", default="balanced", help="/".join(QUALITIES))
    ap.add_argument("--colors", type=int, default=None, help="パレット色数（省略時は品質で決定）")
    ap.add_argument("--palette", default="frequency", help="/".join(PALETTE_METHODS))
    ap.add_argument("--config", type=Path, default=None, help="JSON設定ファイル")
    ap.add_argument("--timeout", type=float, default=300.0, help="完了待ちの上限（秒）")
    ap.add_argument("-v", "--verbose", action="count", default=0)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = load_settings(args.config)
        params = ConversionParams(
            resize_factor=args.factor,
            interpolation=args.interpolation,
            color_mode=args.mode,
            dithering_ratio=args.ratio,
            quality=args.quality,
            max_colors=args.colors,
            palette_method=args.palette,
        )
        data = args.input.read_bytes()
    except (PixelArtError, OSError) as exc:
        log.error("%s", exc)
        return 2

    fmt = (args.output.suffix.lstrip(".") or "png").lower()
    with TaskManager(settings) as manager:
        try:
            image_id = manager.store_uploaded_image(data, file_name=args.input.name)
        except PixelArtError as exc:
            log.error("%s", exc)
            return 2
        task_id = manager.create_task(image_id, params)
        job = manager.wait_for(task_id, timeout=args.timeout)

    if job is None or not job.is_terminal:
        log.error("変換が時間内に終わりませんでした: %s", task_id)
        return 1
    if job.result is None:
        log.error("変換に失敗しました: %s", job.error)
        return 1

    try:
        args.output.write_bytes(encode_image(job.result.pixels, fmt))
    except (PixelArtError, OSError) as exc:
        log.error("%s", exc)
        return 1
    log.info(
        "保存しました: %s (%dx%d, %d色, %.0fms)",
        args.output,
        job.result.width,
        job.result.height,
        len(job.result.palette),
        job.result.processing_time,
    )
    print(" ".join(job.result.palette))
    return 0


if __name__ == "__main__":
    sys.exit(main())
