"""CLI entry-point for the booru crawler."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .api import BooruAPI
from .config import PROVIDERS, AuthConfig, CrawlerConfig, RetryPolicy
from .coordinator import Coordinator
from .models import CrawlRequest, Optimization, RunOutcome, TagFilter, TimeRange
from .providers import get_provider
from .tags import DEFAULT_TEMPLATE

console = Console()

MAX_LISTED_FAILURES = 20


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def _print_summary(outcome: RunOutcome) -> None:
    table = Table(title="Crawl Summary", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in outcome.counts().items():
        table.add_row(key.capitalize(), str(val))
    console.print(table)

    if outcome.failed_partitions:
        failed = Table(title="Failed Partitions", show_header=True, header_style="bold red")
        failed.add_column("Partition", style="bold")
        failed.add_column("Resume page", justify="right")
        failed.add_column("Reason")
        for f in outcome.failed_partitions:
            page = str(f.cursor.page) if f.cursor else "-"
            failed.add_row(f"{f.partition.provider} {f.partition.label}", page, f.reason)
        console.print(failed)

    if outcome.failed_writes:
        failed = Table(title="Failed Writes", show_header=True, header_style="bold red")
        failed.add_column("Post", style="bold")
        failed.add_column("Reason")
        for w in outcome.failed_writes[:MAX_LISTED_FAILURES]:
            failed.add_row(str(w.key), w.reason)
        console.print(failed)
        hidden = len(outcome.failed_writes) - MAX_LISTED_FAILURES
        if hidden > 0:
            console.print(f"  … and {hidden} more")


async def _crawl(request: CrawlRequest, auth: AuthConfig, cfg: CrawlerConfig) -> RunOutcome:
    async with BooruAPI(PROVIDERS[request.provider], auth) as api:
        provider = get_provider(api)
        return await Coordinator(request, provider, api, cfg).run()


def _execute(ctx: click.Context, request: CrawlRequest, partition_concurrency: int) -> None:
    cfg = CrawlerConfig(
        retry=RetryPolicy(max_attempts=ctx.obj["retries"]),
        partition_concurrency=partition_concurrency,
        show_progress=not ctx.obj["verbose"],
    )
    try:
        outcome = asyncio.run(_crawl(request, ctx.obj["auth"], cfg))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]; completed files are kept, rerun to resume")
        sys.exit(130)
    _print_summary(outcome)
    if outcome.ok:
        console.print("[green]✓[/green] Crawl finished")
    else:
        console.print("[red]✗[/red] Crawl finished with failures")
    sys.exit(outcome.exit_code)


def output_options(f):
    f = click.option("--optim", type=click.Choice([o.value for o in Optimization]), default="none",
                     help="Re-encode images (webp: lossless WebP)")(f)
    f = click.option("--overwrite", is_flag=True, help="Overwrite existing files")(f)
    f = click.option("--partition-concurrency", default=2, type=int, show_default=True,
                     help="Partitions crawled in parallel")(f)
    f = click.option("--write-concurrency", default=4, type=int, show_default=True,
                     help="Concurrent asset downloads")(f)
    f = click.option("-o", "--output-path", default="output", type=click.Path(path_type=Path),
                     show_default=True, help="Output folder path")(f)
    f = click.option("-d", "--domain", type=click.Choice(sorted(PROVIDERS)), default="danbooru",
                     show_default=True, help="Board to crawl")(f)
    return f


@click.group()
@click.option("--retries", default=3, type=int, show_default=True, help="Attempts per request")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, retries: int, verbose: bool) -> None:
    """Booru crawler – bulk download posts and metadata from donmai boards.

    Credentials are read from DANBOORU_USERNAME / DANBOORU_API_KEY (a
    .env file is honoured); without them requests are anonymous.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["auth"] = AuthConfig.from_env()
    ctx.obj["retries"] = retries
    ctx.obj["verbose"] = verbose


# ─── Commands ────────────────────────────────────────────────────


@cli.command()
@output_options
@click.option("-t", "--tags", default="", help='Search tags, e.g. "rating:s,q,e"')
@click.option("--year-start", default=2024, type=int, show_default=True)
@click.option("--year-end", type=int, help="Defaults to --year-start")
@click.option("--month-start", default=1, type=click.IntRange(1, 12), show_default=True)
@click.option("--month-end", type=click.IntRange(1, 12), help="Defaults to --month-start")
@click.option("-p", "--prefix", help="Metadata file prefix (defaults to the domain)")
@click.option("--metadata/--no-metadata", default=True, help="Write per-month JSONL metadata")
@click.option("--no-assets", is_flag=True, help="Only collect metadata")
@click.option("--tag-template", default=None, help="Write a caption file per post from this template")
@click.pass_context
def crawl(
    ctx: click.Context,
    domain: str,
    output_path: Path,
    write_concurrency: int,
    partition_concurrency: int,
    overwrite: bool,
    optim: str,
    tags: str,
    year_start: int,
    year_end: int | None,
    month_start: int,
    month_end: int | None,
    prefix: str | None,
    metadata: bool,
    no_assets: bool,
    tag_template: str | None,
) -> None:
    """Crawl a board month by month.

    Example: booru-crawl crawl -d danbooru -t "rating:s,q,e" --year-start 2023 --month-end 12
    """
    year_end = year_end if year_end is not None else year_start
    month_end = month_end if month_end is not None else month_start
    if year_end < year_start or month_end < month_start:
        raise click.BadParameter("end of range precedes its start")
    request = CrawlRequest(
        provider=domain,
        output_root=output_path,
        tag_filter=TagFilter.parse(tags),
        time_range=TimeRange(year_start, year_end, month_start, month_end),
        write_concurrency=write_concurrency,
        overwrite=overwrite,
        caption_template=tag_template,
        save_metadata=metadata,
        download_assets=not no_assets,
        optimization=Optimization(optim),
        prefix=prefix,
    )
    console.print(
        f"[bold]Crawling [cyan]{domain}[/cyan] {year_start}-{month_start:02d} → "
        f"{year_end}-{month_end:02d} [dim]{request.tag_filter}[/dim][/bold]"
    )
    _execute(ctx, request, partition_concurrency)


@cli.command()
@output_options
@click.argument("tags")
@click.option("-n", "--num-posts", default=20, type=int, show_default=True, help="How many posts to download")
@click.option("--score-min", default=1, type=int, show_default=True)
@click.option("--score-max", default=None, type=int)
@click.option("--tag-template", default=DEFAULT_TEMPLATE, show_default=True, help="Caption template")
@click.option("--no-captions", is_flag=True, help="Do not write caption files")
@click.pass_context
def gather(
    ctx: click.Context,
    domain: str,
    output_path: Path,
    write_concurrency: int,
    partition_concurrency: int,
    overwrite: bool,
    optim: str,
    tags: str,
    num_posts: int,
    score_min: int,
    score_max: int | None,
    tag_template: str,
    no_captions: bool,
) -> None:
    """Download the newest NUM_POSTS images matching TAGS, with captions.

    Example: booru-crawl gather "cat_ears" -n 100 --score-min 10
    """
    score = f"{score_min}..{score_max}" if score_max is not None else f"{score_min}.."
    tag_filter = (
        TagFilter.parse(f"{tags} -is:banned")
        .with_group("filetype", ["png", "jpg", "webp"])
        .with_group("score", [score])
    )
    request = CrawlRequest(
        provider=domain,
        output_root=output_path,
        tag_filter=tag_filter,
        target=num_posts,
        write_concurrency=write_concurrency,
        overwrite=overwrite,
        caption_template=None if no_captions else tag_template,
        optimization=Optimization(optim),
    )
    console.print(f"[bold]Gathering {num_posts} posts from [cyan]{domain}[/cyan] [dim]{tag_filter}[/dim][/bold]")
    _execute(ctx, request, partition_concurrency)


def main() -> None:
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
