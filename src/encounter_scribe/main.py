"""Command-line interface for live encounter transcription."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .speech_to_text.cache_utils import default_recording_path
from .speech_to_text.config import (
    DEFAULT_CHUNK_DURATION,
    DEFAULT_LANGUAGE,
    DEFAULT_MODEL_REF,
    TranscriptionConfig,
)
from .speech_to_text.logging_utils import configure_logging
from .speech_to_text.models import EngineError, SessionResult
from .speech_to_text.orchestrator import TranscriptionOrchestrator
from .speech_to_text.transcriber import clear_model_cache
from .speech_to_text.worker import shutdown_inference_worker


class EncounterScribeCLI:
    """Command-line front end for a transcription session."""

    def __init__(
        self,
        config: TranscriptionConfig | None = None,
        orchestrator: TranscriptionOrchestrator | None = None,
        show_confidence_percentage: bool = True,
        output_path: Path | None = None,
    ) -> None:
        """
        Initialize the CLI.

        Args:
            config: Session settings
            orchestrator: Optional orchestrator instance. If None, creates a new one.
            show_confidence_percentage: Whether to show confidence percentages
            output_path: Where to write the session WAV (None to skip export)
        """
        self._orchestrator = orchestrator or TranscriptionOrchestrator(config=config)
        self._orchestrator.on_chunk_transcribed = self._on_chunk_transcribed
        self._orchestrator.on_error = self._on_error
        self._orchestrator.on_model_progress = self._on_model_progress
        self._show_confidence_percentage = show_confidence_percentage
        self._output_path = output_path
        self._running = False
        self._last_progress = -1

    async def start_listening(self) -> None:
        """Start a transcription session."""
        print("🎤 Starting transcription session...")
        started = await self._orchestrator.start()
        self._running = started
        if started:
            engine = self._orchestrator.active_engine
            print(f"✅ Recording with the {engine.value} engine. Speak now!")
            print("   Press Ctrl+C to stop.")
        else:
            print("❌ Could not start the transcription session.")

    async def stop_listening(self) -> SessionResult | None:
        """Stop the session and report the final transcript."""
        if not self._running:
            return None

        print("🛑 Stopping, finishing pending chunks...")
        self._running = False
        result = await self._orchestrator.stop()
        if result is None:
            return None

        print("\n📝 Transcript:")
        print(result.transcript or "(no speech detected)")

        if self._output_path is not None and result.wav_bytes:
            self._output_path.parent.mkdir(parents=True, exist_ok=True)
            self._output_path.write_bytes(result.wav_bytes)
            print(f"💾 Recording saved to {self._output_path}")
        return result

    def _on_chunk_transcribed(self, text: str, chunk_number: int) -> None:
        if not text or not text.strip():
            return

        segment = next(
            (s for s in self._orchestrator.segments if s.chunk_id == chunk_number),
            None,
        )
        if self._show_confidence_percentage and segment is not None:
            confidence_percent = round(segment.confidence * 100)
            print(f"[{chunk_number}] {text} ({confidence_percent}%)")
        else:
            print(f"[{chunk_number}] {text}")

    def _on_error(self, error: EngineError) -> None:
        if error.recoverable:
            return
        print(f"❌ {error.message}")
        if self._orchestrator.manual_entry_available:
            print("✍️  Recognition stopped. Press Ctrl+C to finish the session.")

    def _on_model_progress(self, percent: int) -> None:
        if percent != self._last_progress:
            self._last_progress = percent
            print(f"⏳ Loading model... {percent}%")

    async def run(self) -> None:
        """
        Main CLI run loop.

        Handles startup, main loop, and graceful shutdown.
        """
        try:
            await self.start_listening()

            while self._running:
                await asyncio.sleep(0.1)

        except (KeyboardInterrupt, asyncio.CancelledError):
            print("\n👋 Goodbye!")
        finally:
            if self._running:
                await self.stop_listening()
            shutdown_inference_worker()


async def main(
    config: TranscriptionConfig | None = None,
    show_confidence_percentage: bool = True,
    output_path: Path | None = None,
) -> None:
    """Main entry point for the CLI application."""
    cli = EncounterScribeCLI(
        config=config,
        show_confidence_percentage=show_confidence_percentage,
        output_path=output_path,
    )
    try:
        await cli.run()
    except KeyboardInterrupt:
        pass  # Graceful shutdown already handled in cli.run()


def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="Encounter Scribe - Live transcription of clinical encounters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m encounter_scribe.main                          # Start with defaults
  python -m encounter_scribe.main --engine fallback        # Native recognition only
  python -m encounter_scribe.main --model medium           # Larger Whisper model
  python -m encounter_scribe.main --chunk-seconds 5        # Shorter chunks
  python -m encounter_scribe.main --output visit.wav       # Save the recording
  python -m encounter_scribe.main --output -               # Save under the cache dir
  python -m encounter_scribe.main --reset-model-cache      # Clear model cache

Controls:
  Ctrl+C    - Stop recording, finish pending chunks and print the transcript
        """,
    )

    parser.add_argument(
        "--reset-model-cache",
        action="store_true",
        help="Clear downloaded Whisper models and re-download on next use",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging and debug information",
    )

    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable trace logging (most verbose, includes all debug info)",
    )

    parser.add_argument(
        "--engine",
        choices=["auto", "worker", "fallback"],
        default="auto",
        help="Transcription engine: Whisper worker, native recognition, or auto",
    )

    parser.add_argument(
        "--language",
        default=DEFAULT_LANGUAGE,
        help=f"Transcription language code (default: {DEFAULT_LANGUAGE})",
    )

    parser.add_argument(
        "--model",
        default=DEFAULT_MODEL_REF,
        help=f"Whisper model size, repo id or local path (default: {DEFAULT_MODEL_REF})",
    )

    parser.add_argument(
        "--chunk-seconds",
        type=float,
        default=DEFAULT_CHUNK_DURATION,
        metavar="SECONDS",
        help=f"Audio per inference chunk (default: {DEFAULT_CHUNK_DURATION})",
    )

    parser.add_argument(
        "--no-language-filter",
        action="store_true",
        help="Keep words outside the selected language's character set",
    )

    parser.add_argument(
        "--output",
        type=str,
        default=None,
        metavar="PATH",
        help="Write the session recording as WAV ('-' for the recordings cache dir)",
    )

    parser.add_argument(
        "--no-confidence",
        action="store_true",
        help="Hide confidence percentages in transcription output",
    )

    return parser


def build_config(args: argparse.Namespace) -> TranscriptionConfig:
    """Build session settings from parsed arguments."""
    return TranscriptionConfig(
        chunk_duration=args.chunk_seconds,
        language=args.language,
        model_ref=args.model,
        engine_preference=args.engine,
        language_filter=not args.no_language_filter,
    )


def resolve_output_path(output: str | None) -> Path | None:
    if output is None:
        return None
    if output == "-":
        return default_recording_path()
    return Path(output)


def handle_arguments(args: argparse.Namespace) -> tuple[bool, bool]:
    """
    Handle parsed command-line arguments.

    Args:
        args: Parsed arguments from argparse

    Returns:
        Tuple of (success, should_continue):
        - success: True if all operations succeeded, False if any failed
        - should_continue: True if execution should continue, False if it should stop
    """
    configure_logging(verbose=args.verbose, trace=args.trace)

    if args.reset_model_cache:
        try:
            if clear_model_cache():
                print("✅ Model cache cleared successfully.")
                return True, False
            print("❌ Failed to clear model cache.")
        except Exception as e:
            print(f"❌ Error clearing model cache: {e}")
        return False, False

    return True, True


def cli_entry_with_args() -> None:
    """CLI entry point with argument parsing."""
    parser = create_argument_parser()

    try:
        args = parser.parse_args()

        success, should_continue = handle_arguments(args)

        if not success:
            sys.exit(1)

        if not should_continue:
            sys.exit(0)

        try:
            config = build_config(args)
        except ValueError as e:
            parser.error(str(e))

        asyncio.run(
            main(
                config=config,
                show_confidence_percentage=not args.no_confidence,
                output_path=resolve_output_path(args.output),
            )
        )

    except KeyboardInterrupt:
        pass  # Graceful shutdown
    except SystemExit:
        # Re-raise SystemExit (from argparse help, etc.)
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_entry_with_args()
