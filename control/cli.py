"""
ktrain-db — administer the storage layer from a shell.

Every command prints JSON on stdout. Errors print a JSON error object on
stderr and exit 1. Mutating commands check --role against the permission
matrix before anything is opened.
"""

import functools
import json
import logging
import sys
from typing import Optional

import click

from adapters.errors import StoreError, ValidationError

from .rbac import Permission, require_permission
from .runtime import Runtime
from .settings import load_settings

log = logging.getLogger(__name__)

BACKEND_CHOICE = click.Choice(["embedded", "networked"])


def _emit(payload):
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _handle_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except StoreError as exc:
            log.debug("command failed", exc_info=True)
            click.echo(json.dumps(exc.to_dict(), sort_keys=True, default=str), err=True)
            sys.exit(1)
    return wrapper


class _State:
    """Lazily opened runtime shared by the subcommands of one invocation."""

    def __init__(self, config_path, role):
        self.config_path = config_path
        self.role = role
        self._runtime = None

    def require(self, permission):
        require_permission(self.role, permission)

    def runtime(self) -> Runtime:
        if self._runtime is None:
            self._runtime = Runtime(load_settings(self.config_path)).open(migrate=False)
        return self._runtime

    def close(self):
        if self._runtime is not None:
            self._runtime.close()
            self._runtime = None


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False),
              help="Settings file (default: $KTRAIN_CONFIG or ~/.ktrain.json)")
@click.option("--role", default="OWNER", show_default=True, help="Role to authorize mutating commands as")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], role: str, verbose: bool):
    """Migrate, inspect, reset and switch the KTrain storage backends.

    \b
    EXAMPLES:
      ktrain-db migrate status
      ktrain-db migrate up
      ktrain-db switch networked
      ktrain-db rollback
      ktrain-db config set theme.defaults '{"accent": "#3366ff"}'
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    state = _State(config_path, role)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ── Migrations ────────────────────────────────────────────────

@cli.group()
def migrate():
    """Schema migrations of one backend (default: the active one)."""


@migrate.command("up")
@click.option("--backend", type=BACKEND_CHOICE, help="Backend to migrate")
@click.pass_obj
@_handle_errors
def migrate_up(state, backend):
    state.require(Permission.ADMIN_DB_CONFIG)
    _emit(state.runtime().migrations(backend).apply())


@migrate.command("status")
@click.option("--backend", type=BACKEND_CHOICE, help="Backend to inspect")
@click.pass_obj
@_handle_errors
def migrate_status(state, backend):
    _emit(state.runtime().migrations(backend).status())


@migrate.command("rollback")
@click.option("--backend", type=BACKEND_CHOICE, help="Backend to roll back")
@click.pass_obj
@_handle_errors
def migrate_rollback(state, backend):
    state.require(Permission.ADMIN_DB_CONFIG)
    _emit(state.runtime().migrations(backend).rollback_last())


# ── Data ──────────────────────────────────────────────────────

@cli.command()
@click.argument("scope", type=click.Choice(["all", "leaderboard", "results", "vocab"]))
@click.pass_obj
@_handle_errors
def reset(state, scope):
    """Empty the tables of SCOPE on the active backend."""
    state.require(Permission.ADMIN_RESET)
    rt = state.runtime()
    rt.active().reset(scope)
    _emit({"ok": True, "scope": scope, "backend": rt.pointer.get()})


@cli.command()
@click.option("--backend", type=BACKEND_CHOICE, help="Backend to count (default: active)")
@click.pass_obj
@_handle_errors
def counts(state, backend):
    """Row count per table."""
    rt = state.runtime()
    _emit(rt.adapter(backend or rt.pointer.get()).counts())


# ── Switching ─────────────────────────────────────────────────

@cli.command()
@click.argument("target", type=BACKEND_CHOICE)
@click.option("--no-verify", is_flag=True, help="Accepted for compatibility; counts are always verified")
@click.option("--by", "requested_by", default="cli", show_default=True, help="Recorded as the requester")
@click.pass_obj
@_handle_errors
def switch(state, target, no_verify, requested_by):
    """Copy the active backend into TARGET and make TARGET active."""
    state.require(Permission.ADMIN_DB_SWITCH)
    _emit(state.runtime().switch(target, verify=not no_verify, requested_by=requested_by))


@cli.command()
@click.option("--by", "requested_by", default="cli", show_default=True, help="Recorded as the requester")
@click.pass_obj
@_handle_errors
def rollback(state, requested_by):
    """Restore the retained snapshot into the previous backend."""
    state.require(Permission.ADMIN_DB_ROLLBACK)
    result = state.runtime().rollback(requested_by=requested_by)
    _emit(result)
    if not result["ok"]:
        sys.exit(1)


@cli.command()
@click.pass_obj
@_handle_errors
def status(state):
    """Active backend, maintenance flag, counts and migration status."""
    rt = state.runtime()
    active = rt.active()
    _emit({
        **rt.orchestrator.status(),
        "configured": sorted(rt.adapters),
        "counts": active.counts(),
        "migrations": rt.migrations().status(),
    })


# ── Config ────────────────────────────────────────────────────

@cli.group()
def config():
    """Allow-listed runtime config of the active backend."""


@config.command("get")
@click.argument("key")
@click.option("--scope", default="global", show_default=True)
@click.option("--scope-id", default="global", show_default=True)
@click.pass_obj
@_handle_errors
def config_get(state, key, scope, scope_id):
    _emit({"key": key, "value": state.runtime().config().get(key, scope, scope_id)})


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--scope", default="global", show_default=True)
@click.option("--scope-id", default="global", show_default=True)
@click.option("--by", "updated_by", default="cli", show_default=True)
@click.pass_obj
@_handle_errors
def config_set(state, key, value, scope, scope_id, updated_by):
    """Set KEY to the JSON document VALUE."""
    state.require(Permission.ADMIN_CONFIG_MANAGE)
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"VALUE is not valid JSON: {exc}") from exc
    store = state.runtime().config()
    result = store.set_safe(key, parsed, scope, scope_id, updated_by=updated_by)
    _emit({**result, "version": store.get_version()})


@config.command("export")
@click.pass_obj
@_handle_errors
def config_export(state):
    state.require(Permission.ADMIN_CONFIG_PORTABILITY)
    _emit(state.runtime().config().export_safe_config())


@config.command("import")
@click.argument("file", type=click.File("r"))
@click.option("--by", "updated_by", default="cli", show_default=True)
@click.pass_obj
@_handle_errors
def config_import(state, file, updated_by):
    """Import rows written by `config export` (all or nothing)."""
    state.require(Permission.ADMIN_CONFIG_PORTABILITY)
    try:
        rows = json.load(file)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{file.name} is not valid JSON: {exc}") from exc
    store = state.runtime().config()
    result = store.import_safe_config(rows, updated_by=updated_by)
    _emit({**result, "version": store.get_version()})


def main():
    cli()


if __name__ == "__main__":
    main()
