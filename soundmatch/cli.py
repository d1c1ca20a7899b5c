"""
SoundMatch - command-line interface

Example usage:
    # Analyse one or more files
    soundmatch analyze track.wav
    soundmatch analyze --output results/ a.wav b.flac c.mp3

    # Compare two files
    soundmatch compare a.wav b.wav
    soundmatch compare --genres-a house --genres-b "deep house" house a.wav b.wav
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from soundmatch import __version__
from soundmatch.core.engine import create_orchestrator
from soundmatch.core.metrics import dynamics_band
from soundmatch.core.models import AnalysisRecord, AudioAsset, CompatibilityScore, DeclaredAttributes
from soundmatch.scoring.compatibility import create_scorer
from soundmatch.utils.config import load_config
from soundmatch.utils.errors import SoundMatchError
from soundmatch.utils.logging import setup_logging, setup_logging_from_config


def print_record(name: str, record: AnalysisRecord) -> None:
    """Print one analysis record to console."""
    metrics = record.custom_metrics
    print("\n" + "=" * 60)
    print(f"ANALYSIS: {name}")
    print("=" * 60)
    print(f"Fingerprint: {record.fingerprint}")
    print(f"Model: {record.model_version} ({record.analysis_depth} analysis)")
    print("-" * 60)
    print(f"  Duration: {record.basic.duration:.2f}s")
    print(f"  Tempo: {record.basic.tempo:.1f} BPM ({record.basic.time_signature})")
    print(f"  Key: {record.basic.key.name} (strength {record.harmonic.key_strength:.2f})")
    print(f"  Spectral Centroid: {record.spectral.spectral_centroid:.0f} Hz")
    print(f"  Beat Strength: {record.rhythmic.beat_strength:.2f}")
    print(f"  Onset Density: {record.rhythmic.onset_density:.2f}/s")
    print(f"  Tempo Stability: {record.rhythmic.tempo_stability:.2f}")
    dq = metrics.dynamics_quotient.value
    print(f"  Dynamics Quotient: {dq:.3f} ({dynamics_band(dq)})")
    print(f"  MAD Divergence: {metrics.mad_divergence.value:.3f}")
    print(f"  Texture Complexity: {metrics.texture_complexity.value:.3f}")
    print(f"  Confidence: {record.confidence:.0%}")


def print_score(name_a: str, name_b: str, score: CompatibilityScore) -> None:
    """Print a compatibility report to console."""
    print("\n" + "=" * 60)
    print(f"COMPATIBILITY: {name_a} <-> {name_b}")
    print("=" * 60)
    print(f"Overall: {score.overall:.3f}")
    if score.low_confidence:
        print("Warning: low-confidence analysis on at least one side")
    print("-" * 60)
    for factor, value in score.sub_scores.items():
        print(f"  {factor:<10} {value:.3f}  (weight {score.weights[factor]:.2f})")
    if score.reasons:
        print("\nReasons:")
        for reason in score.reasons:
            print(f"  - {reason}")
    print(f"\nAlgorithm: {score.algorithm_version}")


def _load_assets(paths: List[Path]) -> List[AudioAsset]:
    missing = [p for p in paths if not p.is_file()]
    if missing:
        raise FileNotFoundError(f"Audio file not found: {missing[0]}")
    return [AudioAsset.from_file(p) for p in paths]


def analyze_files(
    paths: List[Path],
    config: dict,
    output_dir: Optional[Path] = None,
) -> int:
    """
    Analyse files and optionally write one JSON record per file.

    Returns:
        Exit code (0 when every file succeeded, 1 otherwise)
    """
    assets = _load_assets(paths)

    def progress_callback(current: int, total: int, item) -> None:
        print(f"[{current}/{total}] {item.asset_id}: {'ok' if item.ok else 'failed'}")

    with create_orchestrator(config) as orchestrator:
        batch = orchestrator.analyze_batch(assets, progress_callback=progress_callback)

    if output_dir:
        output_dir.mkdir(parents=True, exist_ok=True)

    for path, item in zip(paths, batch.items):
        if not item.ok:
            continue
        print_record(path.name, item.record)
        if output_dir:
            target = output_dir / f"{path.stem}.json"
            target.write_text(item.record.to_json(indent=2), encoding="utf-8")
            print(f"\nJSON record saved to: {target}")

    if batch.failed:
        print("\nFailed Files:")
        for item in batch.failed:
            retry = " (retryable)" if item.error.retryable else ""
            print(f"  {item.asset_id}: {type(item.error).__name__}: {item.error}{retry}")

    print(f"\n{batch.success_count}/{batch.total_items} analysed in {batch.total_time:.2f}s")
    return 0 if batch.failure_count == 0 else 1


def compare_files(
    path_a: Path,
    path_b: Path,
    config: dict,
    declared_a: Optional[DeclaredAttributes] = None,
    declared_b: Optional[DeclaredAttributes] = None,
    as_json: bool = False,
) -> int:
    """Analyse two files and print their compatibility."""
    assets = _load_assets([path_a, path_b])
    scorer = create_scorer(config.get("scoring", {}))

    with create_orchestrator(config) as orchestrator:
        batch = orchestrator.analyze_batch(assets)

    if batch.failed:
        for item in batch.failed:
            print(f"Error analysing {item.asset_id}: {item.error}")
        return 1

    record_a, record_b = (item.record for item in batch.items)
    score = scorer.score(record_a, record_b, declared_a, declared_b)

    if as_json:
        print(score.to_json(indent=2))
    else:
        print_score(path_a.name, path_b.name, score)
    return 0


def _declared(genres: Optional[List[str]], tags: Optional[List[str]]) -> Optional[DeclaredAttributes]:
    if not genres and not tags:
        return None
    return DeclaredAttributes(genres=frozenset(genres or ()), tags=frozenset(tags or ()))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soundmatch",
        description="Extract audio descriptors and score compatibility between tracks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  soundmatch analyze track.wav
  soundmatch analyze --output results/ a.wav b.flac
  soundmatch compare a.wav b.wav
  soundmatch compare --genres-a house --tags-b groovy a.wav b.wav
"""
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG, text) logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"SoundMatch {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyse audio files")
    analyze.add_argument("inputs", type=Path, nargs="+", help="Audio file(s) to analyse")
    analyze.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Directory for JSON records (one file per input)"
    )

    compare = subparsers.add_parser("compare", help="Score compatibility of two files")
    compare.add_argument("file_a", type=Path)
    compare.add_argument("file_b", type=Path)
    compare.add_argument("--genres-a", nargs="*", default=None, help="Declared genres of A")
    compare.add_argument("--tags-a", nargs="*", default=None, help="Declared tags of A")
    compare.add_argument("--genres-b", nargs="*", default=None, help="Declared genres of B")
    compare.add_argument("--tags-b", nargs="*", default=None, help="Declared tags of B")
    compare.add_argument("--json", action="store_true", help="Print the score as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the soundmatch command."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(str(args.config) if args.config else None)
    except SoundMatchError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.verbose:
        setup_logging(level="DEBUG", log_format="text", colored=True)
    else:
        setup_logging_from_config(config)

    try:
        if args.command == "analyze":
            return analyze_files(args.inputs, config, output_dir=args.output)
        return compare_files(
            args.file_a,
            args.file_b,
            config,
            declared_a=_declared(args.genres_a, args.tags_a),
            declared_b=_declared(args.genres_b, args.tags_b),
            as_json=args.json,
        )
    except (SoundMatchError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
