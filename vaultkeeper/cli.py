"""
`vaultkeeper` command line.

Commands
--------
vaultkeeper index                      -- sync the vault with its vector index
vaultkeeper index --watch              -- sync, then keep watching for changes
vaultkeeper status                     -- show the index summary
vaultkeeper search "<query>"           -- semantic search
vaultkeeper search "<query>" --limit 5 --filter "path LIKE '%journal%'"
vaultkeeper ask "<question>"           -- answer from the vault with the default model
vaultkeeper ask "<question>" --model gpt-4o-mini --no-rag
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from tqdm import tqdm

from .api import VaultService
from .cli_display import setup_logger, token_tracker
from .config import Config
from .errors import NotFoundError, VaultkeeperError

logger = logging.getLogger(__name__)

_CLI_SESSION = "cli"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vault(service: VaultService, args: argparse.Namespace) -> str:
    vault = args.vault or service.config.VAULT_DIRECTORY
    if not vault:
        print("No vault configured. Set vault_directory in .vaultkeeper.yaml "
              "or pass --vault.", file=sys.stderr)
        sys.exit(1)
    return vault


def _snippet(text: str, width: int = 100) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_index(service: VaultService, args: argparse.Namespace) -> None:
    """Synchronise the vault, optionally keep watching it."""
    vault = _vault(service, args)
    print(f"Indexing vault: {vault}")

    pbar = tqdm(total=100, unit="%", desc="Indexing")
    last = [0]

    def _progress(fraction: float) -> None:
        pct = int(fraction * 100)
        if pct > last[0]:
            pbar.update(pct - last[0])
            last[0] = pct

    def _on_error(message: str) -> None:
        pbar.write(message, file=sys.stderr)

    try:
        report = service.index_files_in_directory(
            progress=_progress, on_error=_on_error, vault_directory=vault)
    finally:
        pbar.close()

    print(
        f"\nIndex complete:\n"
        f"  Added:     {report.added}\n"
        f"  Removed:   {report.removed}\n"
        f"  Unchanged: {report.unchanged}\n"
        f"  Entries:   {report.entries_written}\n"
        f"  Warnings:  {len(report.warnings)}\n"
        f"  Time:      {report.elapsed_seconds:.1f}s"
    )
    for warning in report.warnings:
        print(f"  ! {warning}")

    if args.watch:
        print("\nWatching for changes... (Ctrl+C to stop)")
        watcher = service.watch(vault)
        try:
            watcher.start()  # blocking
        except KeyboardInterrupt:
            pass
        finally:
            watcher.stop()
        print("\nFile watcher stopped.")


def _cmd_status(service: VaultService, args: argparse.Namespace) -> None:
    """Print the table summary for the vault."""
    vault = _vault(service, args)
    try:
        info = service.table_for(vault).info()
    except NotFoundError:
        print("No index found. Run `vaultkeeper index` first.")
        return
    print("\nVault Index Status")
    print("=" * 40)
    for k, v in info.items():
        print(f"  {k:<20} {v}")
    print()


def _cmd_search(service: VaultService, args: argparse.Namespace) -> None:
    vault = _vault(service, args)
    results = service.search(args.query, args.limit, vault, filter=args.filter)
    if not results:
        print(f"  (no results for: {args.query})")
        return
    print(f"\nResults for '{args.query}'  [{len(results)}]")
    print("-" * 60)
    for entry in results:
        print(f"  {entry.score:6.3f}  {entry.path}:{entry.sub_file_start}-{entry.sub_file_end}")
        print(f"          {_snippet(entry.content)}")


def _cmd_ask(service: VaultService, args: argparse.Namespace) -> None:
    service.create_session(_CLI_SESSION, model_name=args.model)

    prompt = args.question
    if not args.no_rag:
        vault = _vault(service, args)
        prompt = service.augment_prompt_with_rag(args.question, _CLI_SESSION, vault)
        logger.debug("[cli] Augmented prompt:\n%s", prompt)

    def _on_token(event) -> None:
        if event.is_error:
            print(f"\n{event.content}", file=sys.stderr, end="")
        else:
            print(event.content, end="", flush=True)

    try:
        service.streaming_prompt(_CLI_SESSION, prompt, _on_token, system_prompt=args.system)
    except KeyboardInterrupt:
        service.abort(_CLI_SESSION)
        print("\n(aborted)")
    print()
    logger.info("[cli] Token usage: %s", token_tracker.summary())


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultkeeper",
        description="Index a markdown vault and ask questions about it.",
    )
    parser.add_argument("--config", help="Path to a .vaultkeeper.yaml file")
    parser.add_argument("--vault", help="Vault directory (overrides the config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")

    subparsers = parser.add_subparsers(title="commands", metavar="<command>")

    # --- index ---
    index_p = subparsers.add_parser("index", help="Sync the vault with its vector index")
    index_p.add_argument("--watch", action="store_true",
                         help="Keep running and re-index files as they change")
    index_p.set_defaults(func=_cmd_index)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show index statistics")
    status_p.set_defaults(func=_cmd_status)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Semantic search over the vault")
    search_p.add_argument("query", help="Natural-language search query")
    search_p.add_argument("--limit", type=int, default=10, metavar="N",
                          help="Maximum number of results (default: 10)")
    search_p.add_argument("--filter", default=None, metavar="EXPR",
                          help="Filter, e.g. \"path LIKE '%%daily%%'\"")
    search_p.set_defaults(func=_cmd_search)

    # --- ask ---
    ask_p = subparsers.add_parser("ask", help="Ask a question, answered from the vault")
    ask_p.add_argument("question", help="The question")
    ask_p.add_argument("--model", default=None, help="Configured model name (default: default_llm)")
    ask_p.add_argument("--no-rag", action="store_true", help="Send the question without notes")
    ask_p.add_argument("--system", default=None, metavar="PROMPT", help="System prompt")
    ask_p.set_defaults(func=_cmd_ask)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point of the ``vaultkeeper`` console script."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.INFO if args.verbose else logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    if not hasattr(args, "func"):
        parser.print_help()
        return

    config = Config.load(args.config)
    setup_logger(config.LOG_DIR)

    service = VaultService(config)
    try:
        args.func(service, args)
    except VaultkeeperError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.close()


if __name__ == "__main__":
    main()
