"""Health check command group."""

import click
from rich.markup import escape

from shipctl.core.context import pass_context, ShipCtlContext
from shipctl.core.exceptions import ShipCtlError
from shipctl.core.output import OutputFormat
from shipctl.deploy.models import HealthCheckResult


def _endpoint(ctx: ShipCtlContext, host: str | None, port: int | None, path: str | None) -> str:
    settings = ctx.profile.health.model_copy(
        update={k: v for k, v in {"port": port, "path": path}.items() if v is not None}
    )
    return settings.endpoint_for(ctx.target(host).host)


def _print_result(ctx: ShipCtlContext, result: HealthCheckResult) -> None:
    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(result.to_dict())


@click.group()
@pass_context
def health(ctx: ShipCtlContext) -> None:
    """Health checks against the deployed service.

    \b
    Examples:
        shipctl health check --host 203.0.113.10
        shipctl health wait --host 203.0.113.10 --attempts 6 --interval 10
    """
    pass


@health.command("check")
@click.option("--host", help="Target host")
@click.option("--port", type=int, help="Service port")
@click.option("--path", help="Health endpoint path")
@pass_context
def check(ctx: ShipCtlContext, host: str | None, port: int | None, path: str | None) -> None:
    """Poll the health endpoint once."""
    try:
        endpoint = _endpoint(ctx, host, port, path)
        result = ctx.verifier.check(endpoint)
        _print_result(ctx, result)

        if result.healthy:
            ctx.output.print_success(f"{endpoint} is healthy (database {result.database_status})")
        else:
            ctx.output.print_failure("Unhealthy", f"{endpoint}: {result.reason}")
            raise click.Abort()

    except ShipCtlError as e:
        ctx.fail(e)


@health.command("wait")
@click.option("--host", help="Target host")
@click.option("--port", type=int, help="Service port")
@click.option("--path", help="Health endpoint path")
@click.option("--attempts", type=int, help="Polls before giving up")
@click.option("--interval", type=float, help="Seconds between polls")
@pass_context
def wait(
    ctx: ShipCtlContext,
    host: str | None,
    port: int | None,
    path: str | None,
    attempts: int | None,
    interval: float | None,
) -> None:
    """Poll until the service is healthy or the attempts run out."""
    try:
        target = ctx.target(host)
        endpoint = _endpoint(ctx, host, port, path)

        def on_poll(attempt: int, result: HealthCheckResult) -> None:
            state = "healthy" if result.healthy else result.reason
            ctx.output.print(f"  attempt {attempt}: {escape(state)}")

        result = ctx.verifier.verify(
            target,
            endpoint=endpoint,
            interval_seconds=interval,
            max_attempts=attempts,
            on_poll=on_poll,
        )
        _print_result(ctx, result)
        ctx.output.print_success(f"{endpoint} is healthy")

    except ShipCtlError as e:
        ctx.fail(e)
