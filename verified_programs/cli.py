"""
CLI for the Verified Programs crawler
=====================================

Commands:
    verified-programs-crawler run            Run the crawler on its schedule
    verified-programs-crawler run --once     Run a single pass and exit
"""

import asyncio
import sys
from typing import Optional

import click
from loguru import logger

from verified_programs import __version__
from verified_programs.core.config import settings


async def _crawl(once: bool, interval: Optional[int], api_url: Optional[str]) -> dict:
    from verified_programs.core.database import close_db
    from verified_programs.core.metrics import MetricsCollector
    from verified_programs.core.redis_client import close_redis, redis_client
    from verified_programs.services.hash_store import HashStore
    from verified_programs.tasks.crawler import Crawler, IntakeClient

    intake = IntakeClient(base_url=api_url)
    crawler = Crawler(HashStore(), intake, redis_client, metrics=MetricsCollector())
    try:
        if once:
            stats = await crawler.run_once()
            return stats.outcomes
        await crawler.run_forever(interval=interval)
        return {}
    finally:
        await intake.close()
        await close_redis()
        await close_db()


@click.group()
@click.version_option(version=__version__)
def main():
    """
    Verified Programs crawler - resubmits known programs for verification

    Examples:
        verified-programs-crawler run
        verified-programs-crawler run --once --api-url http://localhost:3000
    """
    logger.remove()
    logger.add(sys.stderr, level=settings.LOG_LEVEL.upper())


@main.command()
@click.option("--once", is_flag=True, default=False, help="Run a single pass and exit")
@click.option("--interval", type=int, default=None, help="Seconds between runs (default: CRAWLER_INTERVAL_SECONDS)")
@click.option("--api-url", default=None, help="Intake API base URL (default: API_BASE_URL)")
def run(once: bool, interval: Optional[int], api_url: Optional[str]):
    """Submit due programs through the public intake API."""
    try:
        outcomes = asyncio.run(_crawl(once, interval, api_url))
    except KeyboardInterrupt:
        click.echo("Crawler interrupted")
        return
    if once:
        click.echo(f"Crawler pass finished: {outcomes or 'no submissions'}")


if __name__ == "__main__":
    main()
