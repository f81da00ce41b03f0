"""Vultr load balancer controller CLI (vlbctl).

Operator tooling around the controller, using the same configuration and
clients as the controller process.

Usage:
    vlbctl run                      # Run the controller in the foreground
    vlbctl render NAMESPACE NAME    # Print the desired configuration as YAML
    vlbctl status NAMESPACE NAME    # Print ingress of the load balancer
    vlbctl delete NAMESPACE NAME    # Delete the service's load balancer
    vlbctl name NAMESPACE NAME      # Print the load balancer name
"""

from __future__ import annotations

import sys
from typing import Any

import click
import yaml

from . import __version__
from .config import Config, ConfigurationError
from .errors import LoadBalancerError
from .main import Controller, build_controller
from .main import main as controller_main
from .models import DesiredLBConfig, LogicalService
from .reconciler import ssl_fingerprint


def load_controller() -> Controller:
    """Build the controller components from the environment.

    Raises:
        click.ClickException: If configuration or startup fails.
    """
    try:
        config = Config.from_env()
        return build_controller(config)
    except (ConfigurationError, LoadBalancerError) as e:
        raise click.ClickException(str(e)) from e


def get_service(controller: Controller, namespace: str, name: str) -> LogicalService:
    try:
        return controller.store.get_service(namespace, name)
    except LoadBalancerError as e:
        raise click.ClickException(str(e)) from e


def render_desired(desired: DesiredLBConfig) -> dict[str, Any]:
    """Desired configuration as plain data, with the TLS key material redacted."""
    data = desired.model_dump(mode="json", exclude={"ssl"})
    if desired.ssl is not None:
        data["ssl"] = {"sha256": ssl_fingerprint(desired.ssl)}
    return data


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="vlbctl")
def cli() -> None:
    """Vultr load balancer controller CLI (vlbctl).

    Reads the same environment as the controller: VULTR_API_KEY,
    KUBECONFIG, VULTR_REGION and friends.
    """
    pass


@cli.command()
def run() -> None:
    """Run the controller in the foreground."""
    sys.exit(controller_main())


@cli.command()
@click.argument("namespace")
@click.argument("name")
def render(namespace: str, name: str) -> None:
    """Print the desired load balancer configuration of a service."""
    controller = load_controller()
    try:
        service = get_service(controller, namespace, name)
        nodes = controller.store.list_backend_nodes()
        desired = controller.builder.build(service, nodes)
    except LoadBalancerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        controller.close()

    click.echo(yaml.safe_dump(render_desired(desired), sort_keys=False), nl=False)


@cli.command()
@click.argument("namespace")
@click.argument("name")
def status(namespace: str, name: str) -> None:
    """Print the ingress of a service's load balancer."""
    controller = load_controller()
    try:
        service = get_service(controller, namespace, name)
        ingress, exists = controller.reconciler.get_load_balancer(service)
    except LoadBalancerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        controller.close()

    if not exists:
        click.echo(f"No load balancer for {service.key}")
        return

    data = {
        "service": service.key,
        "name": controller.reconciler.get_load_balancer_name(service),
        "ingress": [address.model_dump(exclude_defaults=True) for address in ingress],
    }
    click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def delete(namespace: str, name: str, yes: bool) -> None:
    """Delete a service's load balancer."""
    controller = load_controller()
    try:
        service = get_service(controller, namespace, name)
        if not yes:
            click.confirm(f"Delete the load balancer of {service.key}?", abort=True)
        controller.reconciler.ensure_load_balancer_deleted(service)
    except LoadBalancerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        controller.close()

    click.secho(f"✓ Load balancer of {service.key} is absent", fg="green")


@cli.command()
@click.argument("namespace")
@click.argument("name")
def name(namespace: str, name: str) -> None:
    """Print the load balancer name of a service."""
    controller = load_controller()
    try:
        service = get_service(controller, namespace, name)
    finally:
        controller.close()
    click.echo(controller.reconciler.get_load_balancer_name(service))


if __name__ == "__main__":
    cli()
