# shopbridge/cli/sync_tiktok.py
import asyncio
import click

from shopbridge.core.enums import SyncResource
from shopbridge.core.exceptions import ConnectionNotFoundError, SyncInProgressError
from shopbridge.core.logging_config import configure_logging
from shopbridge.dependencies import get_sync_service

@click.command()
@click.option('--connection-id', default=None, help='Sync a single connection; all connections when omitted')
@click.option('--resource', type=click.Choice([r.value for r in SyncResource]), default=SyncResource.ALL.value)
@click.option('--full', is_flag=True, help='Sync the full window instead of incrementally')
def sync_tiktok(connection_id, resource, full):
    """Run a TikTok Shop sync inline"""
    configure_logging()
    service = get_sync_service()

    async def _sync():
        if not connection_id:
            response = await service.queue_scheduled_sync(run_inline=True)
            click.echo(f"Processed {response.processed} connection(s)")
            for entry in response.results:
                outcome = entry.outcome.value if entry.outcome else "-"
                click.echo(f"  {entry.id} {entry.shop or '(no shop)'}: {entry.status} [{outcome}]")
            return

        try:
            results = await service.run_connection_sync(connection_id, SyncResource(resource), full_sync=full)
        except ConnectionNotFoundError:
            raise click.ClickException(f"No connection {connection_id}")
        except SyncInProgressError:
            raise click.ClickException(f"Connection {connection_id} is already syncing")

        for result in results:
            click.echo(
                f"{result.resource.value}: {result.outcome.value} - pages {result.pages_fetched}, "
                f"fetched {result.records_fetched}, upserted {result.records_upserted}"
            )
            for name, aggregate in sorted(result.by_type.items()):
                click.echo(f"    {name}: {aggregate.count} ({aggregate.total_amount})")
            for error in result.errors:
                click.echo(f"    error on page {error.page} ({error.kind}): {error.message}", err=True)

    asyncio.run(_sync())

if __name__ == "__main__":
    sync_tiktok()
