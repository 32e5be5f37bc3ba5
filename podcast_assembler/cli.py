"""CLI interface with subcommand routing."""

import argparse
import dataclasses
import logging
import os
import sys

from podcast_assembler.artifacts import load_sections
from podcast_assembler.assembly import EpisodeAssembler
from podcast_assembler.config import EngineConfig, default_config, load_config
from podcast_assembler.constants import OUTPUT_BITRATE, OUTPUT_FORMAT, VERSION
from podcast_assembler.errors import AssemblyError, AssemblyFailed, ConfigError
from podcast_assembler.exporter import write_manifest
from podcast_assembler.mixer import ENCODERS
from podcast_assembler.models import MusicAssets
from podcast_assembler.probe import MediaProber
from podcast_assembler.process import ProcessRunner


def _fail(message: str, hint: str | None = None):
    print(f"Error: {message}", file=sys.stderr)
    if hint:
        print(hint, file=sys.stderr)
    raise SystemExit(1)


def _runner(config: EngineConfig) -> ProcessRunner:
    toolchain = config.toolchain
    return ProcessRunner(config.process, ffmpeg=toolchain.ffmpeg, ffprobe=toolchain.ffprobe)


def _check_toolchain(runner: ProcessRunner):
    """Verify ffmpeg and ffprobe are installed."""
    if not runner.check_available():
        _fail(
            f"ffmpeg/ffprobe are required but could not be run ({runner.ffmpeg}, {runner.ffprobe}).",
            "Install with: brew install ffmpeg  (or apt install ffmpeg)",
        )


def _load_config(path: str | None) -> EngineConfig:
    if not path:
        return default_config()
    try:
        return load_config(path)
    except ConfigError as e:
        _fail(str(e))


def cmd_assemble(args):
    """Assemble an episode from a section list."""
    config = _load_config(args.config)
    if args.no_music:
        config = dataclasses.replace(config, music=MusicAssets())
    if args.no_normalize:
        config = dataclasses.replace(
            config, normalization=dataclasses.replace(config.normalization, enabled=False)
        )

    try:
        sections = load_sections(args.sections)
    except ConfigError as e:
        _fail(str(e))
    if not sections:
        _fail(f"No sections listed in {args.sections}")

    _check_toolchain(_runner(config))

    output_path = args.output or f"{os.path.splitext(args.sections)[0]}.{args.format}"

    def show_stage(stage):
        if args.verbose:
            print(f"[{stage.value}]")

    assembler = EpisodeAssembler(config, on_stage=show_stage)
    print(f"Assembling {len(sections)} sections → {output_path}")
    try:
        assembly = assembler.assemble(sections, output_path, fmt=args.format, bitrate=args.bitrate)
    except AssemblyFailed as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.retryable:
            print("The failure was a timeout; retrying may succeed.", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        assembler.cancel()
        print("Cancelled.", file=sys.stderr)
        raise SystemExit(130)

    if not args.no_manifest:
        settings = {
            "format": args.format,
            "bitrate": args.bitrate,
            "normalization": dataclasses.asdict(config.normalization),
            "mixing": dataclasses.asdict(config.mixing),
        }
        manifest_path = write_manifest(assembly, settings)
        if args.verbose:
            print(f"Manifest: {manifest_path}")

    print("Chapters:")
    for chapter in assembly.chapters:
        title = chapter.title or chapter.type.value
        print(f"  {_timestamp(chapter.start_time_seconds)}  {title}")
    fallbacks = [r.element_id for r in assembly.normalization if r.fallback]
    if fallbacks:
        print(f"Warning: not normalized: {', '.join(fallbacks)}", file=sys.stderr)
    print(f"Done: {output_path} ({assembly.total_duration_seconds:.1f}s, "
          f"{assembly.file_size_bytes / 1_000_000:.1f} MB)")


def cmd_probe(args):
    """Show structural info of a media file."""
    runner = _runner(_load_config(args.config))
    try:
        info = MediaProber(runner).probe(args.file)
    except AssemblyError as e:
        _fail(str(e))
    print(f"File:        {info.path}")
    print(f"Duration:    {info.duration_seconds:.3f}s")
    print(f"Codec:       {info.codec}")
    print(f"Sample rate: {info.sample_rate} Hz")
    print(f"Channels:    {info.channels}")
    if info.bitrate:
        print(f"Bitrate:     {info.bitrate // 1000} kb/s")
    print(f"Size:        {info.size_bytes} bytes")


def cmd_loudness(args):
    """Measure integrated loudness and true peak of a media file."""
    config = _load_config(args.config)
    target = args.target if args.target is not None else config.normalization.voice_target_lufs
    try:
        m = MediaProber(_runner(config)).measure_loudness(
            args.file, target, config.normalization.max_true_peak_db
        )
    except AssemblyError as e:
        _fail(str(e))
    print(f"Integrated: {m.integrated_lufs:.2f} LUFS")
    print(f"True peak:  {m.true_peak_db:.2f} dBTP")
    print(f"Range:      {m.loudness_range_lu:.2f} LU")
    print(f"Offset:     {m.target_offset_lu:+.2f} LU to {target:.1f} LUFS")


def cmd_check(args):
    """Check that the toolchain can be invoked."""
    runner = _runner(_load_config(args.config))
    _check_toolchain(runner)
    print(f"ok: {runner.ffmpeg}, {runner.ffprobe}")


def _timestamp(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="podcast-assembler",
        description="Podcast Assembler: loudness-normalize and mix voice sections into an episode",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show stages and debug logging")
    parser.add_argument("--config", help="Path to engine.json")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # assemble
    assemble_parser = subparsers.add_parser("assemble", help="Assemble an episode")
    assemble_parser.add_argument("sections", help="Path to sections.json")
    assemble_parser.add_argument("-o", "--output", help="Output file (default: next to sections.json)")
    assemble_parser.add_argument("--format", default=OUTPUT_FORMAT, choices=sorted(ENCODERS),
                                 help=f"Output format (default: {OUTPUT_FORMAT})")
    assemble_parser.add_argument("--bitrate", default=OUTPUT_BITRATE,
                                 help=f"Output bitrate (default: {OUTPUT_BITRATE})")
    assemble_parser.add_argument("--no-music", action="store_true", help="Ignore configured music beds")
    assemble_parser.add_argument("--no-normalize", action="store_true", help="Skip loudness normalization")
    assemble_parser.add_argument("--no-manifest", action="store_true", help="Do not write output.json")
    assemble_parser.set_defaults(func=cmd_assemble)

    # probe
    probe_parser = subparsers.add_parser("probe", help="Show media file info")
    probe_parser.add_argument("file", help="Media file")
    probe_parser.set_defaults(func=cmd_probe)

    # loudness
    loudness_parser = subparsers.add_parser("loudness", help="Measure loudness of a media file")
    loudness_parser.add_argument("file", help="Media file")
    loudness_parser.add_argument("--target", type=float, help="Target LUFS for the offset")
    loudness_parser.set_defaults(func=cmd_loudness)

    # check
    check_parser = subparsers.add_parser("check", help="Verify ffmpeg and ffprobe are available")
    check_parser.set_defaults(func=cmd_check)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
