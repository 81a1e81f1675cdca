"""licenseguard CLI: install, check and enforce a cluster license.

``licenseguard watch`` is the entry point a licensed service runs
alongside its main process: it validates the stored license, blocks until
a valid one exists, then keeps watching and exits the process with a
non-zero code once the license is gone or expired.
"""

from __future__ import annotations

import logging
import re
import sys
import threading
from pathlib import Path

import click

from licenseguard import exit_codes
from licenseguard.config import LicenseConfig, load_config, validate_config
from licenseguard.errors import ValidationError
from licenseguard.kubernetes import (
    KubeSystemIdentity,
    KubernetesClient,
    KubernetesError,
    KubernetesSecretStore,
)
from licenseguard.log_config import configure_logging
from licenseguard.models import RawLicense
from licenseguard.output import format_entitlement, format_error, format_response
from licenseguard.sources import ClusterIdentitySource, StaticClusterIdentity
from licenseguard.store import LifecycleStore
from licenseguard.supervisor import Supervisor
from licenseguard.validation import LicenseValidator
from licenseguard.watch import ExpiryEnforcer, StartupGate, Ticker

logger = logging.getLogger(__name__)


def _error_code(exc: Exception) -> str:
    """``SubjectMismatch`` -> ``SUBJECT_MISMATCH``."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", type(exc).__name__).upper()


def build_validator(config: LicenseConfig, *, supervisor: Supervisor | None = None) -> LicenseValidator:
    """Wire a validator to the Kubernetes secret store described by *config*."""
    client = KubernetesClient.from_in_cluster(
        token_path=Path(config.kube_token_path),
        ca_path=Path(config.kube_ca_path),
        host=config.kube_host,
        timeout=config.timeout,
        retries=config.retries,
    )
    secret_store = KubernetesSecretStore(
        client,
        namespace=config.namespace,
        secret_name=config.secret_name,
        label_selector=config.label_selector,
    )
    identity: ClusterIdentitySource
    if config.cluster_uuid:
        identity = StaticClusterIdentity(config.cluster_uuid)
    else:
        identity = KubeSystemIdentity(client)
    return LicenseValidator(
        LifecycleStore(),
        secret_store,
        identity,
        on_fatal=supervisor.on_fatal if supervisor is not None else None,
    )


def _load_config_or_exit(ctx: click.Context, json_mode: bool = False) -> LicenseConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except (TypeError, ValueError) as exc:
        click.echo(format_error(str(exc), code="CONFIG_ERROR", json_mode=json_mode))
        sys.exit(exit_codes.VALIDATION_FAILED)
    problems = validate_config(config)
    if problems:
        click.echo(format_error("; ".join(problems), code="CONFIG_ERROR", json_mode=json_mode))
        sys.exit(exit_codes.VALIDATION_FAILED)
    return config


def _validator_or_exit(
    config: LicenseConfig,
    json_mode: bool = False,
    supervisor: Supervisor | None = None,
) -> LicenseValidator:
    try:
        return build_validator(config, supervisor=supervisor)
    except KubernetesError as exc:
        click.echo(format_error(str(exc), code="KUBERNETES_ERROR", retryable=True, json_mode=json_mode))
        sys.exit(exit_codes.RETRYABLE_FAILURE)


def _fail(exc: ValidationError, json_mode: bool) -> None:
    click.echo(format_error(str(exc), code=_error_code(exc), retryable=exc.retryable, json_mode=json_mode))
    sys.exit(exit_codes.exit_code_for(exc))


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="LICENSEGUARD_CONFIG",
    type=click.Path(dir_okay=False),
    help="Path to the YAML config file.",
)
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...).")
@click.version_option(package_name="licenseguard")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """licenseguard: cluster-bound license enforcement."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def check(ctx: click.Context, json_mode: bool) -> None:
    """Verify the license stored in the cluster.

    Read-only: the stored secret is decrypted and checked but never
    rewritten. Use `install` to store a new license.
    """
    config = _load_config_or_exit(ctx, json_mode)
    validator = _validator_or_exit(config, json_mode)
    try:
        entitlement = validator.inspect_license_secret()
    except ValidationError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_entitlement(entitlement.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# install
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--user-id", required=True, help="Subject the license was issued to.")
@click.option("--key", "license_key", required=True, help="Encrypted license key.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def install(ctx: click.Context, user_id: str, license_key: str, json_mode: bool) -> None:
    """Validate a license and store it in the cluster."""
    config = _load_config_or_exit(ctx, json_mode)
    validator = _validator_or_exit(config, json_mode)
    # Load whatever is stored first so an unexpired license is not overwritten.
    try:
        validator.check_license_secret()
    except ValidationError as exc:
        if exc.fatal:
            _fail(exc, json_mode)
            return
        logger.debug("No usable stored license before install: %s", exc)

    try:
        entitlement = validator.install(RawLicense(subject_id=user_id, encrypted_key=license_key.strip()))
    except ValidationError as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_entitlement(entitlement.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


def _refresh_until_licensed(
    validator: LicenseValidator,
    gate: StartupGate,
    ticker: Ticker,
    interval: float,
) -> None:
    """Re-read the stored license until one validates; runs beside the startup gate."""
    while not validator.store.is_licensed():
        try:
            validator.check_license_secret()
            return
        except ValidationError as exc:
            if exc.fatal:
                gate.cancel()
                return
            logger.warning("No valid license yet (%s), retrying in %.0fs", exc, interval)
        except Exception:
            logger.exception("License refresh error, retrying in %.0fs", interval)
        if not ticker.wait(interval):
            return


@cli.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Wait for a valid license, then exit the process when it lapses."""
    config = _load_config_or_exit(ctx)
    supervisor = Supervisor()
    validator = _validator_or_exit(config, supervisor=supervisor)
    store = validator.store

    gate = StartupGate(store, interval=config.gate_interval)
    refresh_ticker = Ticker()
    refresher = threading.Thread(
        target=_refresh_until_licensed,
        args=(validator, gate, refresh_ticker, config.gate_interval),
        name="licenseguard-refresher",
        daemon=True,
    )
    refresher.start()

    if gate.wait():
        refresh_ticker.cancel()
        current = store.current()
        if current is not None:
            click.echo(format_response("success", data={"licensed_to": current.subject_id}))
        enforcer = ExpiryEnforcer(store, supervisor.request_termination, interval=config.enforce_interval)
        enforcer.start()

    supervisor.run()
