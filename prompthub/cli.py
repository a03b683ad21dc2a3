"""[Layer: Presentation] Typer CLI Commands."""

import asyncio
from importlib.metadata import PackageNotFoundError, version as get_package_version
from typing import Awaitable, Callable, Optional, TypeVar, get_args

import typer

from prompthub.core import Library
from prompthub.models import DEFAULT_CATEGORY, Prompt, SortOption

T = TypeVar("T")

_SORT_OPTIONS = get_args(SortOption)


def _get_version() -> str:
    """Get version from package metadata (single source of truth: pyproject.toml)."""
    try:
        return get_package_version("prompthub")
    except PackageNotFoundError:
        return "0.0.0-dev"


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"prompthub {_get_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="prompthub",
    help="Local prompt library with offline semantic search.",
)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Manage and search your prompt library."""


def _open_library() -> Library:
    # Commands are short-lived; the model loads only when a command needs it
    return Library.open(warmup_on_open=False)


async def _with_library(action: Callable[[Library], Awaitable[T]]) -> T:
    library = _open_library()
    try:
        return await action(library)
    finally:
        await library.close()


def _run(action: Callable[[Library], Awaitable[T]]) -> T:
    """Run an async action against a freshly opened library.

    Raises:
        typer.Exit: With code 1 for unknown ids or invalid input.
    """
    try:
        return asyncio.run(_with_library(action))
    except KeyError as e:
        typer.echo(f"Prompt not found: {e.args[0]}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _parse_tags(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return list(dict.fromkeys(t.strip() for t in raw.split(",") if t.strip()))


def _parse_vars(pairs: Optional[list[str]]) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {pair!r}")
        values[key.strip()] = value
    return values


def _format_line(prompt: Prompt, score: Optional[float] = None) -> str:
    star = "*" if prompt.is_favorite else " "
    tags_str = f" [{', '.join(prompt.tags)}]" if prompt.tags else ""
    score_str = f" ({score:.2f})" if score is not None else ""
    return f"  {star} #{prompt.id} {prompt.title}{tags_str} <{prompt.category}>{score_str}"


@app.command()
def add(
    title: str = typer.Argument(..., help="Prompt title"),
    content: str = typer.Argument(..., help="Prompt text; use {{name}} for variables"),
    description: str = typer.Option("", "--description", "-d", help="Short description"),
    category: str = typer.Option(DEFAULT_CATEGORY, "--category", "-c", help="Category"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma-separated tags"),
    prompt_type: str = typer.Option("text", "--type", help="text, image, code, video, audio, other"),
    target_model: Optional[str] = typer.Option(None, "--model", "-m", help="Target model"),
) -> None:
    """Add a prompt to the library."""

    async def action(library: Library) -> Prompt:
        prompt = Prompt(
            title=title,
            content=content,
            description=description,
            category=category,
            tags=_parse_tags(tags),
            prompt_type=prompt_type,
            target_model=target_model,
        )
        return await library.add(prompt)

    prompt = _run(action)
    typer.echo(f"Added #{prompt.id}: {prompt.title}")
    if prompt.variables:
        typer.echo(f"Variables: {', '.join(prompt.variables)}")
    if not prompt.embedding:
        typer.echo("Embedding pending; run `prompthub repair` to compute it.")


@app.command()
def update(
    prompt_id: int = typer.Argument(..., help="Prompt id"),
    title: Optional[str] = typer.Option(None, "--title", help="New title"),
    content: Optional[str] = typer.Option(None, "--content", help="New content"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="New description"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="New category"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma-separated tags (replaces)"),
) -> None:
    """Edit a prompt. Content changes are kept in the version history."""
    changes: dict[str, object] = {
        "title": title,
        "content": content,
        "description": description,
        "category": category,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if tags is not None:
        changes["tags"] = _parse_tags(tags)
    if not changes:
        typer.echo("Nothing to update.")
        return

    prompt = _run(lambda library: library.update(prompt_id, **changes))
    typer.echo(f"Updated #{prompt.id}: {prompt.title}")


@app.command()
def delete(prompt_id: int = typer.Argument(..., help="Prompt id")) -> None:
    """Delete a prompt."""
    if not _run(lambda library: library.delete(prompt_id)):
        typer.echo(f"Prompt not found: {prompt_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted #{prompt_id}")


@app.command()
def fav(prompt_id: int = typer.Argument(..., help="Prompt id")) -> None:
    """Toggle a prompt's favorite flag."""
    prompt = _run(lambda library: library.toggle_favorite(prompt_id))
    state = "added to" if prompt.is_favorite else "removed from"
    typer.echo(f"#{prompt.id} {state} favorites")


@app.command()
def show(prompt_id: int = typer.Argument(..., help="Prompt id")) -> None:
    """Show one prompt in full."""

    async def action(library: Library) -> Optional[Prompt]:
        return library.get(prompt_id)

    prompt = _run(action)
    if prompt is None:
        typer.echo(f"Prompt not found: {prompt_id}", err=True)
        raise typer.Exit(1)

    typer.echo(f"#{prompt.id} {prompt.title}{' *' if prompt.is_favorite else ''}")
    if prompt.description:
        typer.echo(prompt.description)
    typer.echo(f"Category: {prompt.category}  Type: {prompt.prompt_type}")
    if prompt.target_model:
        typer.echo(f"Model: {prompt.target_model}")
    if prompt.tags:
        typer.echo(f"Tags: {', '.join(prompt.tags)}")
    if prompt.variables:
        typer.echo(f"Variables: {', '.join(prompt.variables)}")
    typer.echo(
        f"Used {prompt.usage_count} times, {len(prompt.versions)} earlier versions, "
        f"embedding {'ready' if prompt.embedding else 'pending'}"
    )
    typer.echo("")
    typer.echo(prompt.content)
    if prompt.versions:
        typer.echo("\nEarlier versions:")
        for index, past in enumerate(prompt.versions):
            preview = past.content.replace("\n", " ")[:60]
            typer.echo(f"  [{index}] {past.updated_at:%Y-%m-%d %H:%M}  {preview}")


@app.command(name="list")
def list_prompts(
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Category, or 'favorites'"
    ),
    sort: str = typer.Option("newest", "--sort", "-s", help=", ".join(_SORT_OPTIONS)),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum results"),
) -> None:
    """List prompts."""
    if sort not in _SORT_OPTIONS:
        typer.echo(f"Error: sort must be one of {', '.join(_SORT_OPTIONS)}", err=True)
        raise typer.Exit(1)

    async def action(library: Library) -> list[Prompt]:
        return library.list(category, sort)  # type: ignore[arg-type]

    items = _run(action)
    if not items:
        typer.echo("No prompts yet. Use 'prompthub add' to create one.")
        return
    shown = items[:limit]
    typer.echo(f"\nPrompts ({len(shown)} of {len(items)}):\n")
    for prompt in shown:
        typer.echo(_format_line(prompt))


@app.command()
def search(
    query: str = typer.Argument(..., help="What you are looking for"),
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Category, or 'favorites'"
    ),
    semantic: bool = typer.Option(
        True,
        "--semantic/--lexical",
        help="Load the embedding model for meaning-based search, or match text only",
    ),
) -> None:
    """Search prompts by meaning, falling back to text match."""

    async def action(library: Library):
        use_vectors = semantic and await library.warmup()
        if semantic and not use_vectors:
            typer.echo("Embedding model unavailable; using text match.", err=True)
        return await library.search(query, category, semantic=use_vectors)

    state = _run(action)
    if not state.results:
        typer.echo("No matching prompts.")
        return
    mode = state.strategy.value if state.strategy else "text"
    typer.echo(f"\n{len(state.results)} results ({mode}):\n")
    for prompt in state.results:
        typer.echo(_format_line(prompt, state.scores.get(prompt.id)))


@app.command()
def use(
    prompt_id: int = typer.Argument(..., help="Prompt id"),
    var: Optional[list[str]] = typer.Option(
        None, "--var", "-v", help="Template value as key=value (repeatable)"
    ),
) -> None:
    """Print the prompt with its variables filled in and count the use."""

    async def action(library: Library) -> str:
        return library.use(prompt_id, _parse_vars(var))

    typer.echo(_run(action))


@app.command()
def restore(
    prompt_id: int = typer.Argument(..., help="Prompt id"),
    index: int = typer.Argument(..., help="Version index as listed by 'show' (0 = oldest)"),
) -> None:
    """Restore an earlier version of a prompt's content."""
    prompt = _run(lambda library: library.restore_version(prompt_id, index))
    typer.echo(f"Restored #{prompt.id} to version {index}")


@app.command()
def repair() -> None:
    """Compute any missing embeddings now."""

    async def action(library: Library):
        return await library.repair_now()

    result = _run(action)
    typer.echo(
        f"Repaired {result.repaired} embeddings"
        f" ({result.failed} failed, {result.skipped} skipped)"
    )
    if result.failed:
        raise typer.Exit(1)


@app.command()
def warmup() -> None:
    """Download (if needed) and load the embedding model."""

    async def action(library: Library) -> bool:
        return await library.warmup()

    if not _run(action):
        typer.echo("Embedding model failed to load; see log for details.", err=True)
        raise typer.Exit(1)
    typer.echo("Embedding model ready.")


@app.command()
def stats() -> None:
    """Show library statistics."""

    async def action(library: Library):
        return library.stats()

    s = _run(action)
    typer.echo(f"Prompts:     {s.total}")
    typer.echo(f"Favorites:   {s.favorites}")
    typer.echo(f"Total uses:  {s.total_usage}")
    typer.echo(f"Categories:  {s.categories}")
    typer.echo(f"Tags:        {s.tags}")


@app.command(name="tags")
def list_tags() -> None:
    """List all tags."""

    async def action(library: Library) -> list[str]:
        return library.all_tags()

    all_tags = _run(action)
    if not all_tags:
        typer.echo("No tags yet.")
        return
    typer.echo(f"\nTags ({len(all_tags)}):\n")
    for tag in all_tags:
        typer.echo(f"  {tag}")


@app.command()
def categories() -> None:
    """List all categories."""

    async def action(library: Library) -> list[str]:
        return library.all_categories()

    names = _run(action)
    if not names:
        typer.echo("No categories yet.")
        return
    typer.echo(f"\nCategories ({len(names)}):\n")
    for name in names:
        typer.echo(f"  {name}")


@app.command()
def version() -> None:
    """Show PromptHub version."""
    typer.echo(f"prompthub {_get_version()}")
