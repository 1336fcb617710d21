"""Command line interface for the backup agent."""

import os
import sys
from typing import Optional

import click
import requests

from . import create_agent
from .identity import IdentityError, utc_now_iso
from .panel import PanelClient
from .retry_queue import RetryQueueError
from .scheduler import crontab_lines, init_scheduler, start_scheduler


def get_agent(ctx: click.Context):
    """Create the agent on first use so --help works without configuration."""
    if ctx.obj is None:
        ctx.obj = create_agent(ctx.meta.get('backup_agent.env'))
    return ctx.obj


def get_external_ip() -> Optional[str]:
    try:
        response = requests.get('https://api.ipify.org', timeout=10)
    except requests.RequestException:
        return None
    if response.status_code != 200:
        return None
    return response.text.strip() or None


@click.group()
@click.option('--env', 'env', default=None, help='Configuration name (development, production, testing)')
@click.pass_context
def cli(ctx, env):
    """Backup Agent - database backups reported to the backup panel"""
    ctx.meta['backup_agent.env'] = env


@cli.command()
@click.option('--site', default=None, help='Only backup specific site')
@click.option('--database', default=None, help='Only backup specific database')
@click.option('--dry-run', is_flag=True, help='Show what would be backed up without running')
@click.pass_context
def backup(ctx, site, database, dry_run):
    """Run database backups for all discovered sites."""
    agent = get_agent(ctx)

    click.echo('Backup Agent - Starting backup run')

    sites = agent.runner.discover(site=site, database=database)
    if not sites:
        click.echo('No sites with MySQL databases found.')
        return

    click.echo(f"Found {len(sites)} site(s) with databases.")

    if dry_run:
        click.echo(f"\n{'Site':<30} {'Database':<30}")
        click.echo('-' * 60)
        for target in sites:
            click.echo(f"{target.site:<30} {target.database:<30}")
        return

    if agent.upload_error:
        click.echo(f"✗ Upload destination not configured: {agent.upload_error}", err=True)
        sys.exit(1)

    try:
        result = agent.runner.run_targets(sites)
    except RetryQueueError as e:
        click.echo(f"✗ Retry queue error: {e}", err=True)
        sys.exit(2)

    click.echo()
    for outcome in result.outcomes:
        if outcome.success:
            click.echo(f"✓ {outcome.database} ({outcome.site}): {outcome.filename}")
        else:
            click.echo(f"✗ {outcome.database} ({outcome.site}): {outcome.reason}")

    click.echo(f"\nBackup run complete: {result.successful} successful, {result.failed} failed")
    if result.queue_depth > 0:
        click.echo(f"Warning: Retry queue has {result.queue_depth} pending items.")

    sys.exit(result.exit_code)


@cli.command()
@click.pass_context
def retry(ctx):
    """Process pending items in the retry queue."""
    agent = get_agent(ctx)

    try:
        result = agent.runner.drain_retry_queue()
    except RetryQueueError as e:
        click.echo(f"✗ Retry queue error: {e}", err=True)
        sys.exit(2)

    if result.ready == 0:
        click.echo('Retry queue has no items ready.')
    elif not result.panel_available:
        click.echo('Panel is not available. Retry will be attempted later.')
    else:
        click.echo(f"Processed: {result.processed} successful, {result.failed} failed")

    if result.remaining > 0:
        click.echo(f"Remaining in queue: {result.remaining}")

    sys.exit(result.exit_code)


@cli.command()
@click.option('--paths', 'show_paths', is_flag=True, help='Show configured scan paths')
@click.pass_context
def scan(ctx, show_paths):
    """Scan for sites and their databases."""
    agent = get_agent(ctx)

    if show_paths:
        click.echo('Configured scan paths:')
        for path in agent.scanner.get_paths():
            exists = 'exists' if os.path.isdir(path) else 'not found'
            click.echo(f"  - {path} ({exists})")
        return

    click.echo(f"Paths: {', '.join(agent.scanner.get_paths())}")
    sites = agent.scanner.scan()

    if not sites:
        click.echo('No sites with MySQL databases found.')
        return

    click.echo(f"\n{'Site':<25} {'Database':<25} {'Host':<20} {'Path'}")
    click.echo('-' * 90)
    for target in sites:
        click.echo(f"{target.site:<25} {target.database:<25} {target.connection.host:<20} {target.path or ''}")
    click.echo(f"\nFound {len(sites)} site(s) with MySQL databases.")


@cli.command()
def schedule():
    """Show cron schedule setup instructions."""
    binary_path = os.path.realpath(sys.argv[0]) if sys.argv and sys.argv[0] else 'backup-agent'

    click.echo('Add the following to your crontab (crontab -e):\n')
    for comment, line in crontab_lines(binary_path):
        click.echo(f"# {comment}")
        click.echo(f"{line}\n")

    click.echo('Or run `backup-agent daemon` to keep both schedules in one process.')


@cli.command()
@click.pass_context
def daemon(ctx):
    """Run backups and retry processing on a schedule."""
    agent = get_agent(ctx)
    scheduler = init_scheduler(agent)
    click.echo(
        f"Scheduler started (backups: {agent.config['BACKUP_SCHEDULE']}, "
        f"retry every {agent.config['RETRY_INTERVAL_MINUTES']} min)"
    )
    start_scheduler(scheduler)


@cli.command()
@click.option('--name', default=None, help='Server name (defaults to hostname)')
@click.option('--panel-url', default=None, help='Panel URL')
@click.option('--force', is_flag=True, help='Register again even if already registered')
@click.pass_context
def install(ctx, name, panel_url, force):
    """Register this server with the backup panel."""
    agent = get_agent(ctx)
    identity = agent.identity

    panel = agent.panel
    if panel_url:
        panel = PanelClient(
            panel_url,
            timeout=agent.config['PANEL_TIMEOUT'],
            health_timeout=agent.config['PANEL_HEALTH_TIMEOUT']
        )

    if identity.is_installed() and not force:
        click.echo('✗ This server is already registered. Use --force to re-register.', err=True)
        sys.exit(1)

    try:
        key_pair = identity.generate_keypair()
    except IdentityError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    name = name or agent.config['SERVER_NAME']
    click.echo(f"Registering server '{name}' with panel...")

    response = panel.register(name, key_pair['public'], key_pair['fingerprint'], get_external_ip())
    if not response.ok:
        click.echo(f"✗ Failed to register: {response.message or 'Unknown error'}", err=True)
        sys.exit(1)

    state = {
        'panel_url': panel.base_url,
        'server_id': response.get('server_id'),
        'fingerprint': response.get('fingerprint') or key_pair['fingerprint'],
        'status': response.get('status', 'pending'),
        'registered_at': utc_now_iso(),
    }
    identity.save_state(state)

    click.echo('✓ Registration successful!')
    click.echo(f"  Server ID: {state['server_id']}")
    click.echo(f"  Fingerprint: {state['fingerprint']}")
    click.echo(f"  Status: {state['status']}")

    if state['status'] == 'pending':
        click.echo('\nAwaiting admin approval. Run `backup-agent status` to check.')
        click.echo('Once approved, run `backup-agent verify` to complete setup.')


@cli.command()
@click.pass_context
def status(ctx):
    """Check server registration status with the panel."""
    agent = get_agent(ctx)
    identity = agent.identity

    if not identity.is_installed():
        click.echo('✗ Server not registered. Run `backup-agent install` first.', err=True)
        sys.exit(1)

    state = identity.load_state()
    response = agent.panel.check_status(state.get('fingerprint'))
    if not response.ok:
        click.echo(f"✗ Failed to check status: {response.message or 'Unknown error'}", err=True)
        sys.exit(1)

    changes = {'status': response.get('status')}
    if response.get('api_token'):
        changes['api_token'] = response.get('api_token')
    if response.get('challenge'):
        changes['challenge'] = response.get('challenge')
    state = identity.update_state(**changes)

    click.echo(f"Server ID: {state.get('server_id')}")
    click.echo(f"Status: {state['status']}")

    if state['status'] == 'pending':
        click.echo('Awaiting admin approval.')
    elif state['status'] == 'approved' and state.get('challenge'):
        click.echo('Server approved! Run `backup-agent verify` to complete setup.')
    elif state['status'] == 'rejected':
        click.echo('✗ Server was rejected by admin.', err=True)
        sys.exit(1)
    elif state['status'] == 'verified':
        click.echo('Server is verified and ready to run backups.')


@cli.command()
@click.pass_context
def verify(ctx):
    """Complete server verification with the panel."""
    agent = get_agent(ctx)
    identity = agent.identity

    if not identity.is_installed():
        click.echo('✗ Server not registered. Run `backup-agent install` first.', err=True)
        sys.exit(1)

    state = identity.load_state()
    fingerprint = state.get('fingerprint')

    status_response = agent.panel.check_status(fingerprint)
    if not status_response.ok:
        click.echo(f"✗ Failed to get status: {status_response.message or 'Unknown error'}", err=True)
        sys.exit(1)

    panel_status = status_response.get('status')
    if panel_status == 'pending':
        click.echo('✗ Server still pending approval. Please wait for admin approval.', err=True)
        sys.exit(1)
    if panel_status == 'rejected':
        click.echo('✗ Server was rejected.', err=True)
        sys.exit(1)
    if panel_status == 'verified':
        click.echo('Server is already verified!')
        return

    challenge = status_response.get('challenge')
    if not challenge:
        click.echo('✗ No challenge provided. Server may not be approved yet.', err=True)
        sys.exit(1)

    try:
        signed_challenge = identity.sign_challenge(challenge)
    except IdentityError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    verify_response = agent.panel.verify(fingerprint, signed_challenge)
    if not verify_response.ok:
        click.echo(f"✗ Verification failed: {verify_response.message or 'Unknown error'}", err=True)
        sys.exit(1)

    api_token = verify_response.get('api_token')
    identity.update_state(status='verified', api_token=api_token, verified_at=utc_now_iso())
    agent.panel.token = api_token

    click.echo('✓ Server verified successfully!')
    click.echo('API token has been saved. You can now run backups.')
    click.echo('\nTo run a backup: backup-agent backup')
    click.echo('To schedule backups: backup-agent schedule')


if __name__ == '__main__':
    cli()
