#!/usr/bin/env python3
import click
import json
import os
from tabulate import tabulate

from agentjobs.client import RelayClient, RelayClientError

CONFIG_FILE = os.path.expanduser("~/.agentjobs/config.json")

_STATUS_COLORS = {
    'funded': 'cyan',
    'started': 'yellow',
    'delivered': 'blue',
    'completed': 'green',
    'cancelled': 'red',
}


def load_config():
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, 'r') as f:
        return json.load(f)


def save_config(config):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=4)
    os.chmod(CONFIG_FILE, 0o600)


def get_client():
    config = load_config()
    if not config.get('token'):
        raise click.ClickException("Run 'agentjobs init' first.")
    return RelayClient(config.get('relay_url', 'http://localhost:5005'), config['token'])


def _status(status):
    return click.style(status.upper(), fg=_STATUS_COLORS.get(status, 'white'))


def _run(action, *args):
    try:
        return action(*args)
    except RelayClientError as e:
        raise click.ClickException(e.message)
    except OSError as e:
        raise click.ClickException(f"Error connecting to relay: {e}")


@click.group()
def cli():
    """AgentJobs CLI - drive the job lifecycle from an agent or verifier token"""
    pass


@cli.command()
@click.option('--url', default='http://localhost:5005', help='Relay URL')
@click.option('--token', prompt='Access token', hide_input=True, help='Bearer token issued by POST /tokens')
def init(url, token):
    """Save relay URL and access token."""
    config = load_config()
    config['relay_url'] = url
    config['token'] = token
    save_config(config)
    click.echo(f"Configuration saved to {CONFIG_FILE}")


@cli.command()
@click.option('--status', default=None, help='Filter by status')
@click.option('--seller-id', default=None, help='Filter by seller agent id')
@click.option('--page', default=1, show_default=True)
@click.option('--limit', default=10, show_default=True)
def jobs(status, seller_id, page, limit):
    """List jobs."""
    client = get_client()
    data = _run(lambda: client.list_jobs(status=status, seller_id=seller_id, page=page, limit=limit))

    table = []
    for j in data['jobs']:
        offer = j.get('offer') or {}
        seller = j.get('seller') or {}
        table.append([
            j['id'],
            f"@{seller.get('handle', '?')}",
            f"{offer.get('amount', '?')} {offer.get('currency', '')}",
            (offer.get('description') or '')[:30],
            _status(j['status']),
        ])
    click.echo(tabulate(table, headers=["ID", "Seller", "Amount", "Description", "Status"], tablefmt="simple"))
    p = data['pagination']
    click.echo(f"\nPage {p['page']}/{max(p['total_pages'], 1)} ({p['total']} jobs)")


@cli.command()
@click.argument('job_id')
def show(job_id):
    """Show one job."""
    client = get_client()
    job = _run(client.get_job, job_id)
    rows = [[k, v] for k, v in job.items() if not isinstance(v, dict)]
    click.echo(tabulate(rows, tablefmt="plain"))


@cli.command()
@click.argument('job_id')
def start(job_id):
    """Start a funded job (seller agent)."""
    job = _run(get_client().start_job, job_id)
    click.echo(click.style("Started.", fg='green') + f" Job {job['id']} is {_status(job['status'])}")


@cli.command()
@click.argument('job_id')
@click.argument('delivered_url')
def deliver(job_id, delivered_url):
    """Deliver a started job (seller agent)."""
    result = _run(get_client().deliver_job, job_id, delivered_url)
    click.echo(click.style(result['message'], fg='green'))


@cli.command()
@click.argument('job_id')
def fund(job_id):
    """Mark a job funded (verifier)."""
    job = _run(get_client().fund_job, job_id)
    click.echo(f"Job {job['id']} is {_status(job['status'])}")


@cli.command()
@click.argument('job_id')
def complete(job_id):
    """Mark a delivered job completed (verifier)."""
    job = _run(get_client().complete_job, job_id)
    click.echo(f"Job {job['id']} is {_status(job['status'])}")


@cli.command()
@click.argument('job_id')
def cancel(job_id):
    """Cancel a job (buyer while created, verifier otherwise)."""
    job = _run(get_client().cancel_job, job_id)
    click.echo(f"Job {job['id']} is {_status(job['status'])}")


if __name__ == '__main__':
    cli()
