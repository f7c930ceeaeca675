"""CLI entry-point for car-listing-analyzer.

Crawl a classifieds site into the local database::

    car-listing-analyzer crawl otomoto \
        --url "https://www.otomoto.pl/osobowe/renault/trafic" --max-pages 3

Then enrich the stored listings::

    car-listing-analyzer translate --limit 10
    car-listing-analyzer analyze --limit 10

Settings come from ``car-listing-analyzer.toml`` (or ``--config``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from scrapy.crawler import CrawlerProcess
from scrapy.settings import Settings

from car_listing_analyzer.analyze import STEPS, VehicleAnalyzer
from car_listing_analyzer.config import (
    AppConfig,
    load_app_config,
    load_required_features,
    load_user_criteria,
)
from car_listing_analyzer.errors import (
    ConfigError,
    ExtractionError,
    PageTypeError,
    VehicleNotFoundError,
)
from car_listing_analyzer.items import SOURCES

logger = logging.getLogger(__name__)


def _scrapy_settings(config: AppConfig, headless: bool = True) -> Settings:
    settings = Settings()
    settings.setmodule("car_listing_analyzer.settings", priority="project")
    settings.set("DATABASE_PATH", str(config.database_path))
    settings.set("PARSER_SCHEMA_PATH", str(config.parser_schema_path))
    settings.set("PLN_TO_EUR_RATE", config.pln_to_eur_rate)
    settings.set("LOG_LEVEL", config.log_level)
    launch = dict(settings.getdict("PLAYWRIGHT_LAUNCH_OPTIONS"))
    launch["headless"] = headless
    settings.set("PLAYWRIGHT_LAUNCH_OPTIONS", launch)
    return settings


def _json_dump(data) -> str:
    if isinstance(data, list):
        data = [dict(entry) for entry in data]
    elif data is not None:
        data = dict(data)
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--config", "-c",
    "config_path",
    default=None,
    type=click.Path(),
    help="Path to a TOML config file (default: ./car-listing-analyzer.toml).",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None):
    """Collect vehicle listings from Polish classifieds sites and analyse them."""
    try:
        ctx.obj = load_app_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc))


def _setup_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@main.command()
@click.argument("site")
@click.option("--url", "-u", required=True, help="Search results URL to start from.")
@click.option("--max-pages", type=int, default=None, help="Stop after this many result pages.")
@click.option(
    "--headless/--no-headless",
    default=True,
    help="Run browser in headless mode (default: headless).",
)
@click.option("--full", is_flag=True, help="Keep paginating even when a page is mostly stored listings.")
@click.pass_obj
def crawl(config: AppConfig, site: str, url: str, max_pages: int | None, headless: bool, full: bool):
    """Crawl SITE's search results starting at --url and store new listings.

    SITE is a key from the parser schema (see ``list-sites``)::

        car-listing-analyzer crawl olx --url https://www.olx.pl/motoryzacja/… --max-pages 2
    """
    from car_listing_analyzer.parser import SchemaParser

    try:
        parser = SchemaParser(config.parser_schema_path, config.pln_to_eur_rate)
        parser.schema.site(site)
    except ConfigError as exc:
        _fail(str(exc))
    if site not in SOURCES:
        _fail(f"Unsupported listing source: {site} (expected one of: {', '.join(SOURCES)})")

    settings = _scrapy_settings(config, headless=headless)
    if full:
        settings.set("LISTINGS_SMART_PAGINATION", False)
    process = CrawlerProcess(settings)
    process.crawl("listings", site=site, url=url, max_pages=max_pages, parser=parser)
    process.start()


@main.command()
@click.argument("file", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--url", "-u", default=None, help="Fetch this page instead of reading FILE.")
@click.option("--site", "-s", required=True, help="Site key from the parser schema.")
@click.option(
    "--page-type",
    type=click.Choice(["search", "detail"]),
    default=None,
    help="Fail unless the page is of this type.",
)
@click.pass_obj
def parse(config: AppConfig, file: str | None, url: str | None, site: str, page_type: str | None):
    """Parse a saved page (FILE) or a live one (--url) and print the records as JSON."""
    from car_listing_analyzer.parser import SchemaParser

    if bool(file) == bool(url):
        raise click.UsageError("Provide exactly one of FILE or --url.")
    _setup_logging(config)

    if file:
        html = Path(file).read_text(encoding="utf-8")
    else:
        from car_listing_analyzer.scraper import scrape_url

        html = asyncio.run(scrape_url(url)).html

    try:
        parser = SchemaParser(config.parser_schema_path, config.pln_to_eur_rate)
        result = parser.parse_html(html, site, expected_page_type=page_type)
    except (ConfigError, ExtractionError, PageTypeError) as exc:
        _fail(str(exc))

    click.echo(json.dumps(
        {"pageType": result.page_type, "data": json.loads(_json_dump(result.data))},
        indent=2,
        ensure_ascii=False,
    ))


@main.command()
@click.argument("url")
@click.option("--output", "-o", default=None, help="Write HTML to this file (default: stdout).")
@click.option("--wait-for", default=None, help="CSS selector to wait for before capturing.")
@click.option(
    "--headless/--no-headless",
    default=True,
    help="Run browser in headless mode (default: headless).",
)
@click.pass_obj
def fetch(config: AppConfig, url: str, output: str | None, wait_for: str | None, headless: bool):
    """Fetch the rendered HTML of URL (useful for building parser schemas)."""
    from car_listing_analyzer.scraper import scrape_url

    _setup_logging(config)
    result = asyncio.run(scrape_url(url, headless=headless, wait_for_selector=wait_for))
    if output:
        Path(output).write_text(result.html, encoding="utf-8")
        click.echo(
            f"Saved {len(result.html)} bytes from {result.final_url} "
            f"(HTTP {result.status_code}, {result.scraping_time:.1f}s) to {output}"
        )
    else:
        click.echo(result.html)


def _build_analyzer(config: AppConfig, repository) -> VehicleAnalyzer:
    from car_listing_analyzer.ai import AIService
    from car_listing_analyzer.market_value import MarketValueEstimator, load_market_value_config

    estimator = MarketValueEstimator(repository, load_market_value_config(config.search_config_path))
    return VehicleAnalyzer(
        repository,
        AIService(model=config.ai_model),
        estimator,
        load_user_criteria(config.search_config_path),
        delay_seconds=config.analysis_delay_seconds,
    )


@main.command()
@click.option("--vehicle-id", default=None, help="Analyse only this vehicle.")
@click.option("--limit", type=int, default=None, help="Analyse at most this many vehicles.")
@click.option("--force", is_flag=True, help="Recompute every step, even ones already done.")
@click.option(
    "--skip", "skip_steps",
    multiple=True,
    type=click.Choice(STEPS),
    help="Skip a step (repeatable).",
)
@click.pass_obj
def analyze(config: AppConfig, vehicle_id: str | None, limit: int | None, force: bool, skip_steps: tuple[str, ...]):
    """Translate and score stored listings, resuming where previous runs stopped."""
    from car_listing_analyzer.repository import VehicleRepository

    _setup_logging(config)
    with VehicleRepository(config.database_path) as repository:
        try:
            analyzer = _build_analyzer(config, repository)
            stats = analyzer.run(vehicle_id=vehicle_id, limit=limit, resume=not force, skip_steps=skip_steps)
        except (ConfigError, VehicleNotFoundError) as exc:
            _fail(str(exc))

    for line in stats.summary_lines():
        click.echo(line)
    if stats.failed:
        sys.exit(1)


@main.command()
@click.option("--vehicle-id", default=None, help="Translate only this vehicle.")
@click.option("--limit", type=int, default=None, help="Translate at most this many vehicles.")
@click.option("--force", is_flag=True, help="Re-translate every vehicle and skip the required-features filter.")
@click.pass_obj
def translate(config: AppConfig, vehicle_id: str | None, limit: int | None, force: bool):
    """Translate stored listings to English, filtering out vehicles without required features."""
    from car_listing_analyzer.ai import AIService
    from car_listing_analyzer.repository import VehicleRepository
    from car_listing_analyzer.translate import VehicleTranslator

    _setup_logging(config)
    with VehicleRepository(config.database_path) as repository:
        try:
            translator = VehicleTranslator(
                repository,
                AIService(model=config.ai_model),
                load_required_features(config.search_config_path),
                delay_seconds=config.analysis_delay_seconds,
            )
            stats = translator.run(vehicle_id=vehicle_id, limit=limit, force=force)
        except (ConfigError, VehicleNotFoundError) as exc:
            _fail(str(exc))

    for line in stats.summary_lines():
        click.echo(line)
    if stats.failed:
        sys.exit(1)


@main.command("market-value")
@click.argument("vehicle_id")
@click.option("--save/--no-save", default=False, help="Store the result on the vehicle.")
@click.pass_obj
def market_value(config: AppConfig, vehicle_id: str, save: bool):
    """Compare VEHICLE_ID's price with similar stored listings."""
    from car_listing_analyzer.market_value import MarketValueEstimator, load_market_value_config
    from car_listing_analyzer.repository import VehicleRepository

    _setup_logging(config)
    with VehicleRepository(config.database_path) as repository:
        record = repository.find_vehicle_by_id(vehicle_id)
        if record is None:
            _fail(f"Vehicle with ID {vehicle_id} not found")
        try:
            estimator = MarketValueEstimator(repository, load_market_value_config(config.search_config_path))
        except ConfigError as exc:
            _fail(str(exc))

        score = estimator.calculate_market_value(record)
        if score is None:
            click.echo("Not enough comparable vehicles for a market value estimate.")
            return
        click.echo(f"{record.get('title')}: {score}")
        if save:
            repository.update_vehicle_analysis(vehicle_id, {"market_value_score": score})


@main.command("list-sites")
@click.pass_obj
def list_sites(config: AppConfig):
    """List site keys configured in the parser schema."""
    from car_listing_analyzer.parser import SchemaParser

    try:
        parser = SchemaParser(config.parser_schema_path, config.pln_to_eur_rate)
    except ConfigError as exc:
        _fail(str(exc))

    click.echo("Available sites:")
    for key in parser.site_keys:
        site = parser.schema.site(key)
        click.echo(f"  {key:20s} method={site.method.value} pages={', '.join(sorted(site.page_types))}")


if __name__ == "__main__":
    main()
