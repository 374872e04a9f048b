#!/usr/bin/env python3
"""
Pipeline Runner - Auto-Analyze from Session Exports

Runs one auto-analyze job end to end against CSV exports of a bot platform:
1. Session sampling (adaptive time-window search)
2. Batch classification (concurrent LLM batches)
3. Conflict resolution (label canonicalization)
4. Summary statistics

Usage:
    python src/pipeline_runner.py --sessions exports/sessions.csv --messages exports/messages.csv \
        --start-date 2025-01-15 --start-time 09:00 --count 50
    python src/pipeline_runner.py --sessions sessions.csv --messages messages.csv \
        --start-date 2025-01-15 --start-time 09:00 --count 200 --model gpt-4.1-mini --output results.json
"""

import argparse
import json
import os
import sys
import time
from typing import List, Optional

# Since we're already in src directory, add current directory to path
sys.path.append(os.path.dirname(__file__))

from config_manager import get_config
from job_orchestrator import (
    PHASE_COMPLETE,
    AnalysisConfig,
    AnalysisJobOrchestrator,
    ConfigValidationError,
    ProgressSnapshot,
)
from session_source import DataFrameSessionSource


class PipelineRunner:
    """Runs a single analysis job and reports on it"""

    def __init__(self, orchestrator: AnalysisJobOrchestrator):
        self.orchestrator = orchestrator
        self.start_time = None

    def run(self, config: AnalysisConfig, poll_interval: float = 2.0,
            output_file: Optional[str] = None) -> ProgressSnapshot:
        self.start_time = time.time()
        job_id = self.orchestrator.start(config)

        last_step = None
        while True:
            progress = self.orchestrator.wait(job_id, timeout=poll_interval)
            if progress.current_step != last_step:
                print(f"  [{progress.phase}] {progress.current_step}")
                last_step = progress.current_step
            if progress.is_terminal:
                break

        if progress.phase == PHASE_COMPLETE and output_file:
            self._save_results(job_id, output_file)

        self._print_pipeline_summary(progress)
        return progress

    def _save_results(self, job_id: str, output_file: str):
        results = self.orchestrator.get_results(job_id)
        output_dir = os.path.dirname(output_file)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(results.to_dict(), f, indent=2, default=str)
        print(f"💾 Saved {len(results.sessions)} classified sessions to: {output_file}")

    def _print_pipeline_summary(self, progress: ProgressSnapshot):
        """Print pipeline summary"""
        total_time = time.time() - self.start_time

        print("=" * 60)
        print("📈 PIPELINE SUMMARY")
        print("=" * 60)

        print(f"Total processing time: {total_time:.2f}s")
        print(f"Final phase: {progress.phase}")
        if progress.error:
            print(f"Error: {progress.error}")
        print()

        print("📊 Data Flow:")
        windows = progress.sampling.get("windows_searched", [])
        print(f"  Sessions found: {progress.sessions_found} (windows searched: {', '.join(windows) or 'none'})")
        print(f"  Sessions classified: {progress.sessions_processed}/{progress.total_sessions}")
        if progress.sessions_failed:
            print(f"  Sessions failed: {progress.sessions_failed}")
        print(f"  Batches: {progress.batches_completed}/{progress.total_batches} completed, {progress.batches_failed} failed")
        print(f"  Tokens used: {progress.tokens_used:,}")
        print(f"  Estimated cost: ${progress.estimated_cost:.4f}")
        print()

        if progress.conflict_stats is not None:
            stats = progress.conflict_stats
            print("🔧 Conflict Resolution:")
            print(f"  Conflicts found: {stats.conflicts_found}")
            print(f"  Conflicts resolved: {stats.conflicts_resolved}")
            print(f"  Canonical mappings: {stats.canonical_mappings}")
            print()

        if progress.total_sessions:
            coverage = progress.sessions_processed / progress.total_sessions
            print("✅ Quality Indicators:")
            if coverage >= 0.9:
                print(f"  🟢 High classification coverage ({coverage:.1%})")
            elif coverage >= 0.7:
                print(f"  🟡 Medium classification coverage ({coverage:.1%})")
            else:
                print(f"  🔴 Low classification coverage ({coverage:.1%})")
            print()

        print("=" * 60)


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line interface for the pipeline runner"""
    parser = argparse.ArgumentParser(
        description='Sample bot sessions, classify them with an LLM and canonicalize the labels',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python pipeline_runner.py --sessions sessions.csv --messages messages.csv --start-date 2025-01-15 --start-time 09:00
  python pipeline_runner.py --sessions sessions.csv --messages messages.csv --start-date 2025-01-15 --start-time 09:00 --count 200 --output results.json
        """
    )

    parser.add_argument('--sessions', required=True,
                        help='Sessions CSV export (session_id, user_id, start_time, end_time, containment_type, message_count)')
    parser.add_argument('--messages',
                        help='Messages CSV export (session_id, timestamp, message_type, message)')
    parser.add_argument('--start-date', required=True,
                        help='Search start date, YYYY-MM-DD in the configured timezone')
    parser.add_argument('--start-time', default='09:00',
                        help='Search start time, HH:MM (default: 09:00)')
    parser.add_argument('--count', type=int, default=50,
                        help='Number of sessions to analyze (default: 50)')
    parser.add_argument('--model', default='gpt-4o-mini',
                        help='Model id from the config.json catalog (default: gpt-4o-mini)')
    parser.add_argument('--api-key',
                        help="API key for the model's provider (default: provider env var)")
    parser.add_argument('--poll-interval', type=float, default=2.0,
                        help='Seconds between progress updates (default: 2.0)')
    parser.add_argument('--output',
                        help='Output JSON file path (optional)')

    args = parser.parse_args(argv)

    config_manager = get_config()
    api_key = args.api_key
    if not api_key:
        model_info = config_manager.get_model_info(args.model)
        if model_info is not None:
            api_key = config_manager.get_api_keys().get(model_info.provider)

    try:
        source = DataFrameSessionSource.from_csv(args.sessions, args.messages)
        orchestrator = AnalysisJobOrchestrator(source, config_manager=config_manager)
        runner = PipelineRunner(orchestrator)
        progress = runner.run(
            AnalysisConfig(
                start_date=args.start_date,
                start_time=args.start_time,
                session_count=args.count,
                model_id=args.model,
                api_key=api_key or "",
            ),
            poll_interval=args.poll_interval,
            output_file=args.output,
        )
    except FileNotFoundError as e:
        print(f"❌ Error: Input file not found - {e}")
        return 1
    except ConfigValidationError as e:
        print("❌ Invalid configuration:")
        for error in e.errors:
            print(f"  - {error}")
        return 1

    if progress.phase != PHASE_COMPLETE:
        print(f"❌ Pipeline error: {progress.error}")
        return 1

    print(f"\n🎉 Pipeline completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
