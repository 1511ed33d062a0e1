#!/usr/bin/env python3
"""
Storybook Agent
Command-line front end that turns a text file into an illustrated storybook
"""

import argparse
import asyncio
import base64
import logging
import os
import re
import signal
import sys
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from config_manager import AppConfig, config_manager
from data_models import BookSettings, RunPhase, RunState, UnitStatus
from gemini_service import GeminiConsistencyAnalyzer, GeminiGenerationProvider
from localization import get_supported_languages
from pipeline_stages import PlanningError
from storage import create_store
from workflow_manager import StorybookOrchestrator, WorkflowError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('storybook.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)

PHASE_LABELS = {
    RunPhase.IDLE: "Idle",
    RunPhase.PLANNING: "Planning the book",
    RunPhase.CHARACTERS_GENERATING: "Drawing characters",
    RunPhase.PAGES_GENERATING: "Illustrating pages",
    RunPhase.CONSISTENCY_CHECKING: "Checking consistency",
    RunPhase.COMPLETE: "Complete",
    RunPhase.ERROR: "Failed",
}


class StorybookAgentError(Exception):
    """Base exception for CLI errors"""
    pass


class StorybookAgent:
    """Wires configuration, Gemini services and storage around one orchestrator"""

    def __init__(self, api_key: Optional[str] = None, config_path: Union[str, Path] = "config.json",
                 story_id: Optional[str] = None):
        load_dotenv()
        self.console = Console()
        self.config = self._load_and_validate_config(config_path)
        self.api_key = self._get_api_key(api_key)

        self.store = create_store(self.config.storage)
        analyzer = GeminiConsistencyAnalyzer(self.api_key, self.config)
        self.orchestrator = StorybookOrchestrator(
            provider=GeminiGenerationProvider(self.api_key, self.config),
            analyzer=analyzer,
            store=self.store,
            config=self.config,
            story_id=story_id,
        )

        self._progress: Optional[Progress] = None
        self._task_id = None
        self.orchestrator.add_progress_callback(self._on_progress_update)
        self.orchestrator.add_phase_callback(self._on_phase_change)

        logger.info("StorybookAgent initialized successfully")

    def _load_and_validate_config(self, config_path: Union[str, Path]) -> AppConfig:
        """Load and validate configuration"""
        try:
            config = config_manager.load_config(config_path)
            logger.info(f"Configuration loaded from {config_path}")
            return config
        except Exception as e:
            self.console.print(f"[red]Error loading configuration: {e}[/red]")
            raise StorybookAgentError(f"Configuration error: {e}") from e

    def _get_api_key(self, provided_key: Optional[str]) -> str:
        """Get and validate API key from arguments or environment"""
        api_key = provided_key or os.getenv('GEMINI_API_KEY')

        if not api_key:
            api_key = self.console.input("[yellow]Enter your Google Gemini API key: [/yellow]")

        if not api_key or not api_key.strip():
            raise StorybookAgentError("API key is required but not provided")

        return api_key.strip()

    def _on_progress_update(self, state: RunState):
        if self._progress is not None and self._task_id is not None:
            self._progress.update(
                self._task_id,
                completed=state.progress,
                description=PHASE_LABELS[state.phase],
            )

    def _on_phase_change(self, old_phase: RunPhase, new_phase: RunPhase):
        logger.debug(f"Phase change {old_phase.value} -> {new_phase.value}")
        if new_phase == RunPhase.CHARACTERS_GENERATING and self.orchestrator.state.plan:
            plan = self.orchestrator.state.plan
            self.console.print(Panel(
                "\n".join(f"{i + 1}. {beat}" for i, beat in enumerate(plan.story_arc)),
                title=f"[bold]{plan.title or plan.theme}[/bold]",
                subtitle=plan.theme,
            ))

    def _install_interrupt_handler(self) -> bool:
        """Route Ctrl-C to cooperative cancellation"""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
            return True
        except (NotImplementedError, RuntimeError):
            return False

    def _on_interrupt(self):
        self.console.print("\n[yellow]Cancelling, finishing with the pages done so far...[/yellow]")
        self.orchestrator.cancel()

    async def _run_with_progress(self, operation) -> RunState:
        installed = self._install_interrupt_handler()
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                console=self.console,
                disable=not self.config.ui.show_progress,
            ) as progress:
                self._progress = progress
                self._task_id = progress.add_task("Starting", total=100)
                return await operation
        finally:
            self._progress = None
            if installed:
                asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    async def generate(self, source_text: str, settings: BookSettings) -> RunState:
        self.console.print(f"[bold blue]Story {self.orchestrator.story_id}[/bold blue]")
        return await self._run_with_progress(self.orchestrator.start(source_text, settings))

    async def resume(self, story_id: str) -> RunState:
        self.console.print(f"[bold blue]Resuming story {story_id}[/bold blue]")
        return await self._run_with_progress(self.orchestrator.resume(story_id))

    def export_images(self, output_dir: Union[str, Path]) -> int:
        """Write ready character and page images to ``output_dir``"""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        state = self.orchestrator.state
        written = 0

        targets = [(f"page_{p.index + 1:02d}", p.image_ref) for p in state.page_list if p.is_ready]
        targets += [
            (f"character_{re.sub(r'[^a-z0-9]+', '_', c.name.lower())}", c.reference_image)
            for c in state.ready_characters
        ]
        for stem, image_ref in targets:
            match = DATA_URL_PATTERN.match(image_ref)
            if not match:
                logger.debug(f"Skipping non-inline image for {stem}")
                continue
            extension = "jpg" if match.group(1) == "jpeg" else match.group(1)
            (output_dir / f"{stem}.{extension}").write_bytes(base64.b64decode(match.group(2)))
            written += 1
        return written

    def display_summary(self, state: RunState):
        """Print the per-page result table"""
        summary = self.orchestrator.get_run_summary()
        table = Table(title=f"📖 {summary['title'] or state.story_id}", show_header=True, header_style="bold blue")
        table.add_column("Page", style="cyan", width=6)
        table.add_column("Caption")
        table.add_column("Status", width=10)
        table.add_column("Warnings", style="yellow")

        status_styles = {
            UnitStatus.READY: "[green]ready[/green]",
            UnitStatus.FAILED: "[red]failed[/red]",
            UnitStatus.PENDING: "[dim]pending[/dim]",
        }
        for page in state.page_list:
            table.add_row(
                str(page.index + 1),
                page.caption,
                status_styles[page.status],
                "; ".join(page.warnings),
            )
        self.console.print(table)

        characters = summary["characters"]
        self.console.print(
            f"Characters: {characters['ready']}/{characters['total']} ready, "
            f"{characters['failed']} failed | Consistency issues found: {summary['issues']}"
        )
        if summary["duration"] is not None:
            self.console.print(f"Duration: {summary['duration']:.1f}s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate an illustrated storybook from a text file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s story.txt                         # 10 pages for a 6 year old
  %(prog)s story.txt --pages 12 --age 8      # Custom length and audience
  %(prog)s story.txt --style "ink and wash"  # Custom art style
  %(prog)s --resume 3f2a9c...                # Continue a stored run
        """
    )
    parser.add_argument("source", nargs="?", help="Path to the source text file")
    parser.add_argument("--pages", "-p", type=int, default=10, help="Number of pages (default: 10)")
    parser.add_argument("--age", "-a", type=int, default=6, help="Target reader age (default: 6)")
    parser.add_argument("--intensity", type=int, default=5, help="Story intensity 0-10 (default: 5)")
    parser.add_argument("--style", "-s", default="whimsical watercolor", help="Art style description")
    parser.add_argument("--notes", default="", help="Free-form notes for the planner")
    parser.add_argument(
        "--language", "-l",
        help="Caption language code (e.g., en, zh, es)"
    )
    parser.add_argument(
        "--quality-tier",
        choices=["standard-flash", "premium-2k", "premium-4k"],
        default="standard-flash",
    )
    parser.add_argument("--aspect-ratio", default="1:1", help="Page aspect ratio (default: 1:1)")
    parser.add_argument("--no-consistency", action="store_true", help="Skip the consistency check")
    parser.add_argument("--output", "-o", help="Directory to write generated images to")
    parser.add_argument(
        "--config", "-c",
        default="config.json",
        help="Path to configuration file (default: config.json)"
    )
    parser.add_argument(
        "--api-key",
        help="Google Gemini API key (or set GEMINI_API_KEY env var)"
    )
    parser.add_argument("--resume", metavar="STORY_ID", help="Continue a stored run")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    return parser


def settings_from_args(args, config: AppConfig) -> BookSettings:
    language = args.language or config.language.default
    if language not in get_supported_languages():
        raise StorybookAgentError(f"Unsupported language: {language}")
    return BookSettings(
        target_age=args.age,
        page_count=args.pages,
        intensity=args.intensity,
        style=args.style,
        notes=args.notes,
        quality_tier=args.quality_tier,
        aspect_ratio=args.aspect_ratio,
        language=language,
        consistency_check=config.pipeline.consistency_check and not args.no_consistency,
        consistency_max_retries=config.pipeline.consistency_max_retries,
    )


def main():
    """Main entry point"""
    console = Console()
    parser = build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    if not args.source and not args.resume:
        parser.error("a source file or --resume STORY_ID is required")

    try:
        console.print("[bold blue]📚 Storybook Agent[/bold blue]\n")
        agent = StorybookAgent(api_key=args.api_key, config_path=args.config, story_id=args.resume)

        async def run_async() -> RunState:
            if args.resume:
                return await agent.resume(args.resume)
            source_path = Path(args.source)
            if not source_path.exists():
                raise StorybookAgentError(f"Source file '{source_path}' not found")
            source_text = source_path.read_text(encoding="utf-8")
            settings = settings_from_args(args, agent.config)
            return await agent.generate(source_text, settings)

        try:
            state = asyncio.run(run_async())
        except KeyboardInterrupt:
            console.print("\n[yellow]⚠️ Interrupted; stored progress can be resumed with --resume[/yellow]")
            sys.exit(130)
        except PlanningError as e:
            console.print(f"\n[red]❌ Planning failed: {e}[/red]")
            console.print("[yellow]Run the same command again to retry from the top.[/yellow]")
            sys.exit(1)
        except (WorkflowError, ValueError) as e:
            console.print(f"\n[red]❌ {e}[/red]")
            logger.exception("Run failed")
            sys.exit(1)

        agent.display_summary(state)
        if state.cancel_requested:
            console.print(f"[yellow]⚠️ Cancelled. Resume with --resume {state.story_id}[/yellow]")
        elif state.phase == RunPhase.COMPLETE:
            console.print("\n[bold green]🎉 Storybook generation completed![/bold green]")

        if args.output:
            count = agent.export_images(args.output)
            console.print(f"[green]📁 Wrote {count} image(s) to {args.output}[/green]")

    except StorybookAgentError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]❌ Fatal error: {e}[/red]")
        logger.exception("Fatal error in main")
        sys.exit(1)


if __name__ == "__main__":
    main()
