"""Command line entry point for the domain-mapping auto-TLS check."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console

from autotls.config import AppSettings, ConfigurationError, load_settings, resource_names_for_run
from autotls.errors import AutoTLSCheckError
from autotls.logging_config import configure_logging
from autotls.services.domain_mappings import mapping_host
from autotls.services.kubectl import KubectlClient
from autotls.telemetry import build_telemetry_client
from autotls.workflow import DomainMappingAutoTLSCheck

console = Console()


def _load(ctx: click.Context, **overrides: Any) -> AppSettings:
    try:
        return load_settings(ctx.obj["config_path"], **overrides)
    except ConfigurationError as exc:
        raise click.UsageError(str(exc), ctx=ctx) from exc


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with settings (same keys as AUTOTLS_* variables, lowercase).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None):
    """Verify automatic TLS for Knative domain mappings end-to-end."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.option("--service-name", default=None, help="Fixed service name prefix (TLS_SERVICE_NAME).")
@click.option("--namespace", default=None, help="Namespace to create resources in.")
@click.option("--custom-domain", default=None, help="Suffix domain for the mapped hostname.")
@click.option("--ingress-endpoint", default=None, help="host[:port] to dial instead of DNS.")
@click.option("--log-level", default=None, help="Console log level.")
@click.pass_context
def run(
    ctx: click.Context,
    service_name: str | None,
    namespace: str | None,
    custom_domain: str | None,
    ingress_endpoint: str | None,
    log_level: str | None,
):
    """Create a service and domain mapping, wait for TLS, and verify HTTPS."""
    settings = _load(
        ctx,
        tls_service_name=service_name,
        namespace=namespace,
        custom_domain=custom_domain,
        ingress_endpoint=ingress_endpoint,
        log_level=log_level,
    )
    configure_logging(settings)

    cluster = KubectlClient(
        kubectl_binary=settings.kubectl_binary,
        kubeconfig=settings.kubeconfig,
        timeout_seconds=settings.kubectl_timeout_seconds,
    )
    check = DomainMappingAutoTLSCheck(
        settings=settings,
        cluster=cluster,
        telemetry=build_telemetry_client(settings),
    )
    try:
        result = check.run()
    except AutoTLSCheckError as exc:
        console.print(f"[red]✗ Check failed:[/red] {exc}")
        ctx.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Check interrupted; created resources were cleaned up.[/yellow]")
        ctx.exit(130)

    console.print(f"[green]✓ https://{result.host} verified[/green]")
    console.print(f"  Service:     {result.namespace}/{result.service_name}")
    console.print(f"  URL:         {result.service_url}")
    console.print(f"  Certificate: {result.certificate_name}")


@main.command()
@click.option("--service-name", default=None, help="Fixed service name prefix (TLS_SERVICE_NAME).")
@click.option("--custom-domain", default=None, help="Suffix domain for the mapped hostname.")
@click.pass_context
def hostname(ctx: click.Context, service_name: str | None, custom_domain: str | None):
    """Print the service name and mapped hostname a run would use."""
    settings = _load(ctx, tls_service_name=service_name, custom_domain=custom_domain)
    names = resource_names_for_run(settings)
    click.echo(f"{names.service}\t{mapping_host(names.service, settings.custom_domain)}")


@main.command(name="show-config")
@click.pass_context
def show_config(ctx: click.Context):
    """Print the effective settings as YAML."""
    settings = _load(ctx)
    click.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=True), nl=False)


if __name__ == "__main__":
    main()
