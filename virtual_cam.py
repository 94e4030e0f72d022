"""Glyph webcam exposed as a virtual camera device."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

import cv2  # type: ignore
import numpy as np
import pyvirtualcam  # type: ignore
from PIL import ImageFont  # type: ignore

import glyph_cam


class VirtualCamPresenter(glyph_cam.ImagePresenter):
    """Image presenter that hands every finished canvas to a virtual camera."""

    def __init__(
        self,
        camera: Any,
        glyph_size: int,
        font: Optional[ImageFont.ImageFont] = None,
        mirror: bool = True,
    ) -> None:
        super().__init__(glyph_size, font=font, mirror=mirror)
        self.camera = camera

    def present(self, batch: Sequence[glyph_cam.DrawInstruction], width: int, height: int) -> None:
        super().present(batch, width, height)
        frame = self.canvas
        if frame.shape[:2] != (self.camera.height, self.camera.width):
            frame = cv2.resize(
                frame,
                (self.camera.width, self.camera.height),
                interpolation=cv2.INTER_NEAREST,
            )
        self.camera.send(np.ascontiguousarray(frame))
        self.camera.sleep_until_next_frame()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Expose the glyph-rendered webcam via a virtual camera device."
    )
    parser.add_argument(
        "--device",
        type=int,
        default=0,
        help="Zero-based input camera index (default: 0).",
    )
    parser.add_argument(
        "--output-width",
        type=int,
        default=640,
        help="Width in pixels for the virtual camera stream (default: 640).",
    )
    parser.add_argument(
        "--output-height",
        type=int,
        default=480,
        help="Height in pixels for the virtual camera stream (default: 480).",
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=20.0,
        help="Frame rate for the virtual camera (default: 20).",
    )
    parser.add_argument(
        "--font-path",
        type=Path,
        default=None,
        help="Optional path to a TTF font file (monospace strongly recommended).",
    )
    glyph_cam.add_transcoder_arguments(parser)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    glyph_cam.configure_logging(args.verbose)

    if args.output_width < 1 or args.output_height < 1:
        print("The output size must be at least 1x1 pixels.", file=sys.stderr)
        return 1

    try:
        config = glyph_cam.config_from_args(args)
        font = glyph_cam.resolve_font(args.font_path, config.glyph_size)
    except glyph_cam.ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    capture = glyph_cam.CameraCapture(args.device)
    try:
        capture.open()
    except glyph_cam.CaptureError as exc:
        print(f"Camera error: {exc}", file=sys.stderr)
        return 1

    controls: Optional[glyph_cam.ControlPoller] = None

    try:
        try:
            virtual_cam_ctx = pyvirtualcam.Camera(
                width=args.output_width,
                height=args.output_height,
                fps=max(1, int(args.fps if args.fps > 0 else 20)),
                fmt=pyvirtualcam.PixelFormat.RGB,
            )
        except RuntimeError as exc:
            print(
                "\nUnable to start a virtual camera.\n"
                "pyvirtualcam could not find a working backend.\n"
                "Make sure a virtual camera driver is installed (OBS Studio 26+\n"
                "with the Virtual Camera component, v4l2loopback on Linux, or\n"
                "another driver listed in the pyvirtualcam documentation).",
                file=sys.stderr,
            )
            print(f"\nBackend error:\n{exc}\n", file=sys.stderr)
            return 1

        with virtual_cam_ctx as virtual_cam:
            print(
                f"Virtual camera started: {virtual_cam.device}.\n"
                "Select this camera in your video conferencing software."
            )
            presenter = VirtualCamPresenter(
                virtual_cam, config.glyph_size, font=font, mirror=not args.no_mirror
            )
            loop = glyph_cam.RenderLoop(
                capture,
                presenter,
                glyph_cam.GlyphTranscoder(config),
                args.output_width,
                args.output_height,
            )

            controls = glyph_cam.ControlPoller()
            if controls.mode == "none":
                print("Controls: Ctrl+C to quit (runtime controls unavailable on this terminal).", file=sys.stderr)
            else:
                print(glyph_cam.CONTROLS_HELP, file=sys.stderr)

            # The virtual camera paces each tick through sleep_until_next_frame.
            state = glyph_cam.run_loop(
                loop,
                0.0,
                lambda: glyph_cam.apply_control_events(controls.poll(), loop, presenter),
            )
            return 1 if state is glyph_cam.LoopState.STOPPED else 0
    except KeyboardInterrupt:
        return 0
    finally:
        if controls is not None:
            controls.close()
        capture.release()


if __name__ == "__main__":
    raise SystemExit(main())
