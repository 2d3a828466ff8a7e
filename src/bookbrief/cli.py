from __future__ import annotations

import argparse
import asyncio
import html
import socket
import sys
from importlib import metadata
from pathlib import Path
from typing import Sequence

import tomllib
import uvicorn
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .api import BackendClient, FetchError
from .chapters import ContentMode, StructuralError
from .diagrams import MermaidCliEngine
from .logging_utils import build_uvicorn_log_config, configure_logging
from .marks import LocalStore, SummaryMarkRegistry
from .reader import ReaderSession
from .render import DIAGRAM, MarkdownDiagramRenderer, RenderedDocument, split_segments
from .settings import AIConfig, ClientConfig, ConfigSchemaError, load_client_config
from .summarize import (
    DEFAULT_LANGUAGE,
    DEFAULT_RATIO,
    MAX_RATIO,
    MIN_RATIO,
    SUPPORTED_LANGUAGES,
    SummarizationParameters,
    SummaryArtifact,
    ValidationError,
    clamp_ratio,
)
from .web import WebConfig, create_app

console = Console()
err_console = Console(stderr=True)

COMMANDS = ("books", "upload", "delete", "toc", "read", "summarize", "config", "models", "web")


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover - defensive
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("bookbrief")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"bookbrief {__version__}",
    )


def _ratio_arg(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ratio: {value}") from exc
    if not MIN_RATIO <= parsed <= MAX_RATIO:
        raise argparse.ArgumentTypeError(
            f"ratio {value} is outside {MIN_RATIO:g}-{MAX_RATIO:g}"
        )
    snapped = clamp_ratio(parsed)
    if abs(snapped - parsed) > 1e-9:
        err_console.print(f"[yellow]Using ratio {snapped:g} (nearest 0.1 step to {value}).[/yellow]")
    return snapped


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--api-url",
        help="Backend API base URL (default: $BOOKBRIEF_API_BASE_URL or http://localhost:3001/api).",
    )
    parser.add_argument(
        "--store",
        help="Local store file for summary marks (default: $BOOKBRIEF_STORE or ~/.bookbrief/local-store.json).",
    )
    parser.add_argument(
        "--mmdc",
        help="mermaid-cli executable used to render diagrams (default: $BOOKBRIEF_MMDC or mmdc).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Backend request timeout in seconds (default: $BOOKBRIEF_TIMEOUT or 30).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging.",
    )


def _add_mode_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-e",
        "--expanded",
        action="store_true",
        help="Use the chapter text together with all of its subsections.",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bookbrief",
        description="Browse books on a bookbrief backend and read AI summaries of their chapters.",
        epilog=f"Commands: {', '.join(COMMANDS)}. Run `bookbrief <command> -h` for details.",
    )
    _add_version_flag(ap)
    return ap


def build_books_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief books", description="List books in the library.")
    _add_common_options(ap)
    return ap


def build_upload_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief upload", description="Upload an EPUB to the library.")
    ap.add_argument("epub", help="Path to the .epub file")
    _add_common_options(ap)
    return ap


def build_delete_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief delete", description="Delete a book from the library.")
    ap.add_argument("book_id", help="Book id")
    ap.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    _add_common_options(ap)
    return ap


def build_toc_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief toc", description="Show a book's table of contents.")
    ap.add_argument("book_id", help="Book id")
    ap.add_argument(
        "--expand",
        action="append",
        default=[],
        metavar="CHAPTER_ID",
        help="Expand this chapter's subsections (repeatable).",
    )
    ap.add_argument("--all", action="store_true", help="Expand every chapter.")
    _add_common_options(ap)
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief read", description="Print a chapter's text.")
    ap.add_argument("book_id", help="Book id")
    ap.add_argument("chapter_id", help="Chapter id")
    _add_mode_flag(ap)
    _add_common_options(ap)
    return ap


def build_summarize_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bookbrief summarize",
        description="Generate an AI summary of a chapter.",
    )
    ap.add_argument("book_id", help="Book id")
    ap.add_argument("chapter_id", help="Chapter id")
    _add_mode_flag(ap)
    ap.add_argument(
        "-r",
        "--ratio",
        type=_ratio_arg,
        default=DEFAULT_RATIO,
        help="Target length as a fraction of the original, 0.1-0.8 in steps of 0.1 (default: %(default)s).",
    )
    ap.add_argument(
        "-l",
        "--language",
        type=str.lower,
        choices=SUPPORTED_LANGUAGES,
        default=DEFAULT_LANGUAGE,
        help="Summary language (default: %(default)s).",
    )
    ap.add_argument("-p", "--prompt", help="Extra instruction appended to the default prompt.")
    ap.add_argument("--html", help="Write the rendered summary (with diagrams) to this HTML file.")
    _add_common_options(ap)
    return ap


def build_config_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="bookbrief config",
        description="Show or update the backend AI configuration.",
    )
    ap.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="FIELD=VALUE",
        help="Update a configuration field, e.g. --set modelName=gpt-4o (repeatable).",
    )
    _add_common_options(ap)
    return ap


def build_models_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief models", description="List models offered by the backend.")
    _add_common_options(ap)
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="bookbrief web", description="Serve the local web reader.")
    ap.add_argument("--host", default="127.0.0.1", help="Bind host (default: %(default)s).")
    ap.add_argument("--port", type=int, default=2047, help="Bind port (default: %(default)s).")
    _add_common_options(ap)
    return ap


def _client_config(args: argparse.Namespace) -> ClientConfig:
    configure_logging(bool(getattr(args, "debug", False)), console=err_console)
    return load_client_config(
        api_base_url=getattr(args, "api_url", None),
        store_path=getattr(args, "store", None),
        mmdc_path=getattr(args, "mmdc", None),
        timeout=getattr(args, "timeout", None),
    )


def _build_reader(config: ClientConfig) -> ReaderSession:
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    registry = SummaryMarkRegistry(LocalStore(config.store_path))
    renderer = MarkdownDiagramRenderer(MermaidCliEngine(config.mmdc_path))
    return ReaderSession(client, registry, renderer, cache_summaries=config.cache_summaries)


def _fail(message: str) -> int:
    err_console.print(f"[red]{message}[/red]")
    return 1


def _run_books(args: argparse.Namespace) -> int:
    config = _client_config(args)
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    books = client.list_books()
    if not books:
        console.print("No books yet. Upload one with `bookbrief upload book.epub`.")
        return 0
    table = Table(title="Library")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("Author")
    table.add_column("Chapters", justify="right")
    table.add_column("Uploaded")
    table.add_column("Lang")
    for book in books:
        table.add_row(
            book.id,
            book.title,
            book.author or "",
            str(book.chapter_count),
            book.upload_label,
            (book.language or "").upper(),
        )
    console.print(table)
    return 0


def _run_upload(args: argparse.Namespace) -> int:
    config = _client_config(args)
    path = Path(args.epub).expanduser()
    if not path.is_file():
        return _fail(f"File not found: {path}")
    if path.suffix.lower() != ".epub":
        return _fail(f"Not an .epub file: {path}")
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    result = client.upload_epub(path)
    title = result.get("title") or path.stem
    book_id = result.get("id")
    console.print(f"Uploaded [bold]{title}[/bold]" + (f" as {book_id}" if book_id else ""))
    return 0


def _run_delete(args: argparse.Namespace) -> int:
    config = _client_config(args)
    if not args.yes and not Confirm.ask(
        f'Delete "{args.book_id}"? This action cannot be undone.', console=console
    ):
        console.print("Cancelled.")
        return 1
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    client.delete_book(args.book_id)
    console.print(f"Deleted {args.book_id}")
    return 0


def _print_toc(reader: ReaderSession) -> None:
    assert reader.book is not None
    header = reader.book.title
    if reader.book.author:
        header += f" - {reader.book.author}"
    console.print(f"[bold]{header}[/bold]  ({len(reader.tree)} chapters)")
    for entry in reader.toc():
        marker = " "
        if entry.expandable:
            marker = "-" if entry.expanded else "+"
        badge = " [yellow]*[/yellow]" if entry.has_summary else ""
        indent = "  " * entry.depth
        console.print(
            f"{indent}{marker} {escape(entry.chapter.title)}"
            f" [dim]{entry.chapter.order_label} ({entry.chapter.id})[/dim]{badge}",
            highlight=False,
        )


def _run_toc(args: argparse.Namespace) -> int:
    config = _client_config(args)
    reader = _build_reader(config)

    async def work() -> None:
        await reader.load_book(args.book_id)
        if args.all:
            reader.expansion.expand_all(reader.tree)
        for chapter_id in args.expand:
            if chapter_id not in reader.tree:
                err_console.print(f"[yellow]Unknown chapter id: {chapter_id}[/yellow]")
                continue
            reader.expansion.expand(chapter_id)
            reader.expansion.reveal(reader.tree, chapter_id)

    asyncio.run(work())
    _print_toc(reader)
    return 0


def _run_read(args: argparse.Namespace) -> int:
    config = _client_config(args)
    reader = _build_reader(config)
    mode = ContentMode.EXPANDED if args.expanded else ContentMode.SHALLOW

    async def work() -> str | None:
        await reader.load_book(args.book_id)
        return await reader.select_chapter(args.chapter_id, mode)

    try:
        text = asyncio.run(work())
    except KeyError:
        return _fail(f"Chapter not found: {args.chapter_id}")
    assert reader.selection is not None
    chapter = reader.selection.chapter
    console.print(f"[bold]{chapter.title}[/bold] [dim]{chapter.order_label}[/dim]")
    console.print(text or "", markup=False, highlight=False)
    return 0


def _print_summary(artifact: SummaryArtifact) -> None:
    console.print(
        f"[bold]{artifact.compression_label}[/bold] "
        f"[dim]({artifact.original_token_count} -> {artifact.summary_token_count} tokens)[/dim]"
    )
    for segment in split_segments(artifact.summary_text):
        if segment.kind == DIAGRAM:
            console.print(Panel(segment.text, title="diagram", border_style="yellow"), markup=False)
        else:
            console.print(Markdown(segment.text))


def _summary_page(title: str, artifact: SummaryArtifact, document: RenderedDocument) -> str:
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{html.escape(title)}</title>\n"
        "<style>body{font-family:'Crimson Pro',Georgia,serif;max-width:48rem;margin:2rem auto;"
        "line-height:1.7;font-size:18px}.bb-diagram{display:flex;justify-content:center;margin:1.5rem 0}"
        ".bb-diagram-error{display:block;border:1px solid #fecaca;background:#fef2f2;padding:1rem}"
        ".stats{color:#6b7280;font-size:14px}</style>\n</head>\n<body>\n"
        f"<h1>{html.escape(title)}</h1>\n"
        f"<p class=\"stats\">{html.escape(artifact.compression_label)} "
        f"({artifact.original_token_count} &rarr; {artifact.summary_token_count} tokens)</p>\n"
        f"{document.to_html()}\n</body>\n</html>\n"
    )


def _run_summarize(args: argparse.Namespace) -> int:
    config = _client_config(args)
    reader = _build_reader(config)
    mode = ContentMode.EXPANDED if args.expanded else ContentMode.SHALLOW
    params = SummarizationParameters(
        compression_ratio=args.ratio,
        language=args.language,
        custom_prompt=args.prompt,
    )

    async def work() -> tuple[SummaryArtifact | None, RenderedDocument | None]:
        await reader.load_book(args.book_id)
        await reader.select_chapter(args.chapter_id, mode)
        if not reader.can_summarize():
            return None, None
        artifact = await reader.summarize(params)
        document = await reader.render_summary() if args.html else None
        return artifact, document

    try:
        artifact, document = asyncio.run(work())
    except KeyError:
        return _fail(f"Chapter not found: {args.chapter_id}")
    if artifact is None:
        return _fail("Chapter has no text to summarize.")
    _print_summary(artifact)
    if args.html and document is not None:
        assert reader.selection is not None
        output = Path(args.html).expanduser()
        output.write_text(
            _summary_page(reader.selection.chapter.title, artifact, document),
            encoding="utf-8",
        )
        for failure in document.failures:
            err_console.print(f"[yellow]Diagram {failure.segment.segment_id}: {failure.error}[/yellow]")
        console.print(f"Wrote {output}")
    return 0


def _parse_assignments(items: Sequence[str]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigSchemaError(f"Expected FIELD=VALUE, got {item!r}")
        updates[key.strip()] = value
    return updates


def _run_config(args: argparse.Namespace) -> int:
    config = _client_config(args)
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    ai_config = AIConfig.from_payload(client.get_config())
    if args.set:
        ai_config = ai_config.apply_updates(_parse_assignments(args.set))
        client.update_config(ai_config.to_payload())
        console.print("Configuration saved.")
    table = Table(title="AI configuration", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in ai_config.display_items():
        table.add_row(key, value)
    console.print(table)
    return 0


def _run_models(args: argparse.Namespace) -> int:
    config = _client_config(args)
    client = BackendClient(config.api_base_url, timeout=config.timeout)
    table = Table(title="Models")
    table.add_column("Name", style="bold")
    table.add_column("Alias")
    table.add_column("Hosted by")
    for model in client.list_models():
        table.add_row(model.name, model.alias, model.hosted_by)
    console.print(table)
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"0.0.0.0", "::"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> int:
    config = _client_config(args)
    app = create_app(
        WebConfig(
            api_base_url=config.api_base_url,
            store_path=config.store_path,
            mmdc_path=config.mmdc_path,
            timeout=config.timeout,
        )
    )
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/"
    console.print(f"Serving bookbrief for {config.api_base_url}")
    console.print(f"Web URL: {url}")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(),
    )
    return 0


_RUNNERS = {
    "books": (build_books_parser, _run_books),
    "upload": (build_upload_parser, _run_upload),
    "delete": (build_delete_parser, _run_delete),
    "toc": (build_toc_parser, _run_toc),
    "read": (build_read_parser, _run_read),
    "summarize": (build_summarize_parser, _run_summarize),
    "config": (build_config_parser, _run_config),
    "models": (build_models_parser, _run_models),
    "web": (build_web_parser, _run_web),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] in _RUNNERS:
        build, run = _RUNNERS[argv[0]]
        args = build().parse_args(argv[1:])
        try:
            return run(args)
        except FetchError as exc:
            return _fail(str(exc))
        except StructuralError as exc:
            return _fail(f"Malformed book structure: {exc}")
        except (ValidationError, ConfigSchemaError) as exc:
            return _fail(str(exc))

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"unknown command: {argv[0]}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
