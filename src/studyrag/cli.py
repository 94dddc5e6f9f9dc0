"""Command line interface for StudyRAG."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from studyrag.config import AppConfig
from studyrag.embedding.batcher import EmbeddingBatcher
from studyrag.embedding.providers import create_provider
from studyrag.errors import StudyRagError
from studyrag.index.pipeline import IngestionPipeline
from studyrag.index.search import Retriever
from studyrag.index.storage import SQLiteVectorStore
from studyrag.jobs import JobTracker
from studyrag.utils.files import iter_pdf_paths
from studyrag.utils.text import chunk_text_at_boundaries


console = Console()
app = typer.Typer(help="StudyRAG - PDF ingestion and retrieval for study chat")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _load_config(db: Path | None) -> AppConfig:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = db
    return config


def _open_store(config: AppConfig) -> SQLiteVectorStore:
    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)
    return SQLiteVectorStore(resolved_db)


@app.command()
def ingest(
    inputs: List[Path] = typer.Argument(..., help="PDF files or folders to ingest.", resolve_path=True),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="openai, ollama or local"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Ingest PDFs: extract, chunk, embed and store them."""
    _setup_logging(verbose)
    config = _load_config(db)

    pdf_paths = list(iter_pdf_paths(inputs))
    if not pdf_paths:
        console.print("[yellow]No PDFs found.[/yellow]")
        return

    store = _open_store(config)
    tracker = JobTracker(ttl_seconds=config.job_ttl_seconds)
    pipeline = IngestionPipeline(store, tracker, config)
    ingested = failed = 0
    try:
        for path in pdf_paths:
            try:
                result = asyncio.run(pipeline.ingest_path(path, provider))
            except StudyRagError as exc:
                console.print(f"[red]Failed[/red] {path}: {exc.message}")
                failed += 1
                continue
            console.print(f"Stored [bold]{result.title}[/bold] as document {result.id}")
            ingested += 1
    finally:
        store.close()
    console.print(f"Ingested: {ingested}, failed: {failed}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(5, "--k", help="Maximum number of chunks"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Embedding provider"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Retrieve the chunks a chat turn would use as context."""
    _setup_logging(verbose)
    config = _load_config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        raise typer.BadParameter(f"Database not found: {resolved_db}")

    async def _search() -> list:
        embedder = create_provider(provider, config)
        try:
            retriever = Retriever(
                EmbeddingBatcher(embedder, max_chars=config.max_embedding_chars),
                store,
                threshold=config.similarity_threshold,
                fallback=config.fallback_chunks,
            )
            return await retriever.retrieve(query, k=k)
        finally:
            await embedder.aclose()

    store = SQLiteVectorStore(resolved_db)
    try:
        results = asyncio.run(_search())
    except StudyRagError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Similarity")
    table.add_column("Document")
    table.add_column("Chunk")
    table.add_column("Snippet")
    for result in results:
        snippet = result.text.replace("\n", " ")
        table.add_row(
            f"{result.similarity:.4f}", str(result.document_id), str(result.chunk_index), snippet[:180]
        )
    console.print(table)


@app.command()
def documents(db: Path = typer.Option(None, "--db", help="SQLite database path")) -> None:
    """List stored documents."""
    config = _load_config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found.[/yellow]")
        return

    store = SQLiteVectorStore(resolved_db)
    try:
        rows = store.list_documents()
    finally:
        store.close()

    table = Table(show_header=True, header_style="bold magenta")
    for column in ("ID", "Title", "File", "Provider", "Chunks"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            str(row["id"]), row["title"], row["originalname"], str(row["provider"]), str(row["chunk_count"])
        )
    console.print(table)


@app.command()
def delete(
    doc_id: int = typer.Argument(..., help="Document ID"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Delete a document and all of its chunks."""
    config = _load_config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to delete.[/yellow]")
        raise typer.Exit(code=1)

    store = SQLiteVectorStore(resolved_db)
    try:
        deleted = store.delete_document(doc_id)
    finally:
        store.close()
    if not deleted:
        console.print(f"[yellow]Document {doc_id} not found.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Deleted document {doc_id}.")


@app.command()
def segment(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to split"),
    chunk_size: int = typer.Option(1500, help="Target chunk size in characters"),
    overlap: int = typer.Option(200, help="Overlap between chunks"),
) -> None:
    """Split a long text file at line boundaries and print the chunks."""
    text = path.read_text(encoding="utf-8")
    try:
        chunks = chunk_text_at_boundaries(text, chunk_size=chunk_size, overlap=overlap)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    for index, chunk in enumerate(chunks):
        console.rule(f"Chunk {index} ({len(chunk)} chars)")
        console.print(chunk, markup=False)
    console.print(f"{len(chunks)} chunks")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(3001, help="Server port"),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    console.print(f"Starting StudyRAG API on http://{host}:{port}")
    uvicorn.run("studyrag.web.app:app", host=host, port=port, reload=False, log_level="info")
