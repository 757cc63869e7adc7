import json
import sys

import click
import yaml
from rich.console import Console

from devrunner.cli.main import fail, get_db, get_service_context, load_document, wants_json
from devrunner.crypto import encrypt_secret, load_secrets_key
from devrunner.errors import ConfigError
from devrunner.logging import EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR

console = Console()

PLAN_KEYS = ("business_plan", "technical_plan", "ux_plan")


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "has_business_plan": p.business_plan is not None,
        "has_technical_plan": p.technical_plan is not None,
        "has_ux_plan": p.ux_plan is not None,
        "github_repo": (
            f"{p.github_repo_owner}/{p.github_repo_name}"
            if p.github_repo_owner and p.github_repo_name
            else None
        ),
        "netlify_site_id": p.netlify_site_id,
        "production_url": p.production_url,
        "last_deploy_at": p.last_deploy_at,
        # Secret values are never printed, only which ones are set.
        "secrets": sorted((p.secrets or {}).keys()),
    }


def _missing_project(ctx, project_id):
    if wants_json(ctx):
        click.echo(json.dumps({"success": False, "error": "project_not_found"}))
    else:
        console.print(f"[red]Project {project_id} not found[/red]")
    sys.exit(EXIT_RUNTIME_ERROR)


def _secrets_key(ctx, context) -> bytes:
    try:
        return load_secrets_key(context.config.secrets_key)
    except ConfigError as exc:
        fail(ctx, exc, EXIT_CONFIG_ERROR)


def _store_secret(db, project_id: str, key: str, value: str, secrets_key: bytes):
    """Store one hosting token, encrypted."""
    project = db.get_project(project_id)
    secrets = dict(project.secrets or {})
    secrets[key] = encrypt_secret(value, secrets_key)
    return db.update_project(project_id, secrets=secrets)


@click.group()
def project():
    """Project management commands."""
    pass


@project.command("list")
@click.option("--limit", default=20, help="Number of projects to show")
@click.pass_context
def list_projects(ctx, limit):
    """List all projects."""
    from rich.table import Table

    db = get_db()
    projects = db.list_projects()[:limit]

    if wants_json(ctx):
        click.echo(json.dumps([_project_dict(p) for p in projects]))
        return

    table = Table(title="Projects")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Repository")
    for p in projects:
        repo = _project_dict(p)["github_repo"] or "-"
        table.add_row(p.id, p.name, p.status, repo)
    console.print(table)


@project.command("show")
@click.argument("project_id")
@click.pass_context
def show_project(ctx, project_id):
    """Show project details."""
    db = get_db()
    try:
        p = db.get_project(project_id)
    except KeyError:
        _missing_project(ctx, project_id)
        return

    data = _project_dict(p)
    if wants_json(ctx):
        click.echo(json.dumps(data))
        return

    console.print(f"[bold]Project: {p.name}[/bold] (ID: {p.id})")
    console.print(f"Status: {p.status}")
    console.print(
        "Plans: "
        + ", ".join(
            f"{key}={'yes' if data['has_' + key] else 'no'}" for key in PLAN_KEYS
        )
    )
    console.print(f"Repository: {data['github_repo'] or '-'}")
    console.print(f"Deploy site: {p.netlify_site_id or '-'}")
    console.print(f"Production URL: {p.production_url or '-'}")


@project.command("create")
@click.argument("name")
@click.option("--description", "-d", help="Project description")
@click.option("--plans", "plans_path", type=click.Path(exists=True, dir_okay=False),
              help="YAML or JSON file with business_plan, technical_plan and ux_plan")
@click.pass_context
def create_project(ctx, name, description, plans_path):
    """Create a new project, optionally with its approved planning documents."""
    plans = {}
    if plans_path:
        try:
            data = load_document(plans_path) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise click.ClickException(f"Cannot read plans file: {exc}")
        if not isinstance(data, dict):
            click.echo("✗ Error: plans file must be a mapping", err=True)
            sys.exit(EXIT_CONFIG_ERROR)
        plans = {key: data.get(key) for key in PLAN_KEYS if isinstance(data.get(key), dict)}

    db = get_db()
    p = db.create_project(name, description=description, **plans)

    if wants_json(ctx):
        click.echo(json.dumps({"success": True, "project": _project_dict(p)}))
    else:
        click.echo(f"✓ Created project: {p.name}")
        click.echo(f"  ID: {p.id}")
        missing = [key for key in PLAN_KEYS if key not in plans]
        if missing:
            click.echo(f"  Missing plans (runs need all three): {', '.join(missing)}")


@project.command("connect-github")
@click.argument("project_id")
@click.argument("repository")
@click.option("--token", envvar="DEVRUNNER_GITHUB_TOKEN", required=True,
              help="GitHub access token (or DEVRUNNER_GITHUB_TOKEN)")
@click.pass_context
def connect_github(ctx, project_id, repository, token):
    """Connect a project to a GitHub repository given as OWNER/REPO."""
    owner, _, repo_name = repository.partition("/")
    if not owner or not repo_name or "/" in repo_name:
        raise click.BadParameter("expected OWNER/REPO", param_hint="REPOSITORY")

    context = get_service_context()
    secrets_key = _secrets_key(ctx, context)
    db = get_db(context)
    try:
        db.update_project(project_id, github_repo_owner=owner, github_repo_name=repo_name)
        p = _store_secret(db, project_id, "github_token", token, secrets_key)
    except KeyError:
        _missing_project(ctx, project_id)
        return

    if wants_json(ctx):
        click.echo(json.dumps({"success": True, "project": _project_dict(p)}))
    else:
        click.echo(f"✓ Connected {p.name} to {owner}/{repo_name}")


@project.command("connect-netlify")
@click.argument("project_id")
@click.argument("site_id")
@click.option("--token", envvar="DEVRUNNER_NETLIFY_TOKEN", required=True,
              help="Netlify access token (or DEVRUNNER_NETLIFY_TOKEN)")
@click.option("--url", "production_url", default=None, help="Production URL of the site")
@click.pass_context
def connect_netlify(ctx, project_id, site_id, token, production_url):
    """Connect a project to a Netlify site for the final deploy."""
    context = get_service_context()
    secrets_key = _secrets_key(ctx, context)
    db = get_db(context)
    fields = {"netlify_site_id": site_id}
    if production_url:
        fields["production_url"] = production_url
    try:
        db.update_project(project_id, **fields)
        p = _store_secret(db, project_id, "netlify_token", token, secrets_key)
    except KeyError:
        _missing_project(ctx, project_id)
        return

    if wants_json(ctx):
        click.echo(json.dumps({"success": True, "project": _project_dict(p)}))
    else:
        click.echo(f"✓ Connected {p.name} to deploy site {site_id}")
