"""Deploy command group."""

from typing import Any

import click
from rich.markup import escape

from shipctl.core.context import pass_context, ShipCtlContext
from shipctl.core.exceptions import ShipCtlError
from shipctl.core.output import OutputFormat, format_duration
from shipctl.deploy import ArtifactReference, DeploymentAttempt, RunContext


def attempt_row(attempt: DeploymentAttempt) -> dict[str, Any]:
    """Flatten an attempt for table output."""
    return {
        "id": attempt.id,
        "artifact": attempt.artifact.image,
        "phase": attempt.phase.value,
        "outcome": attempt.outcome.value if attempt.outcome else "-",
        "error": attempt.error_kind or "",
        "started": attempt.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        "duration": format_duration(attempt.duration_seconds),
        "rollback_of": attempt.rollback_of or "",
    }


def report_attempt(ctx: ShipCtlContext, attempt: DeploymentAttempt) -> None:
    """Print the final attempt and exit non-zero unless it succeeded."""
    ctx.output.print_data(attempt.to_dict() if ctx.output_format != OutputFormat.TABLE else attempt_row(attempt))

    if attempt.noop:
        ctx.output.print_success(attempt.message)
    elif attempt.succeeded and attempt.rollback_of:
        ctx.output.print_warning(
            f"Deployment failed; rolled back to {attempt.artifact.image} (attempt {attempt.id})"
        )
        raise click.exceptions.Exit(1)
    elif attempt.succeeded:
        ctx.output.print_success(f"Deployment {attempt.id} succeeded: {attempt.artifact.image}")
    else:
        ctx.output.print_failure(attempt.error_kind or "DeploymentError", attempt.message)
        raise click.Abort()


@click.group()
@pass_context
def deploy(ctx: ShipCtlContext) -> None:
    """Deployment orchestration - run, history, status.

    \b
    Examples:
        shipctl deploy run --host 203.0.113.10 --tag v1.2.0
        shipctl deploy run --host 203.0.113.10 --tag v1.2.0 --auto-rollback --yes
        shipctl deploy history --host 203.0.113.10
        shipctl deploy status abc12345
    """
    pass


@deploy.command("run")
@click.option("--host", help="Target host (defaults to SHIPCTL_HOST / SERVER_HOST)")
@click.option("--user", help="SSH user")
@click.option("--tag", help="Image tag to deploy")
@click.option("--image", help="Full image reference namespace/name:tag (overrides --tag)")
@click.option("--docker-user", help="Registry namespace (defaults to DOCKER_USERNAME)")
@click.option("--auto-rollback/--no-auto-rollback", default=None, help="Roll back automatically if verification fails")
@click.option("--backup-first", is_flag=True, help="Take a safety backup of the database before deploying")
@click.option("--health-attempts", type=int, help="Health polls before giving up")
@click.option("--health-interval", type=float, help="Seconds between health polls")
@click.option("--health-timeout", type=float, help="Total verification budget in seconds")
@click.option("-y", "--yes", is_flag=True, help="Confirm an automatic rollback without prompting")
@pass_context
def run(
    ctx: ShipCtlContext,
    host: str | None,
    user: str | None,
    tag: str | None,
    image: str | None,
    docker_user: str | None,
    auto_rollback: bool | None,
    backup_first: bool,
    health_attempts: int | None,
    health_interval: float | None,
    health_timeout: float | None,
    yes: bool,
) -> None:
    """Deploy an image tag and verify its health.

    \b
    Examples:
        shipctl deploy run --host 203.0.113.10 --tag v1.2.0
        shipctl deploy run --image acme/todo-api:v1.2.0 --backup-first
    """
    try:
        if not image and not tag:
            raise click.UsageError("Provide --tag or --image")

        target = ctx.target(host, user)
        if image:
            artifact = ArtifactReference.parse(image)
        else:
            artifact = ArtifactReference(ctx.repository(docker_user), tag)  # type: ignore[arg-type]

        controller = ctx.controller(interactive=not yes)
        options = controller.default_options(
            auto_rollback=auto_rollback,
            confirmed=yes,
            backup_first=backup_first,
            health_attempts=health_attempts,
            health_interval=health_interval,
            health_timeout=health_timeout,
        )

        if ctx.dry_run:
            run_ctx = RunContext(target=target, artifact=artifact)
            ctx.log_dry_run("deploy", {"host": target.host, "image": artifact.image})
            for name in ("prepare_command", "configure_command", "activate_command"):
                template = getattr(ctx.profile.deploy, name)
                ctx.output.print(escape(controller.render(template, run_ctx)), style="dim")
            return

        ctx.output.print_info(f"Deploying {artifact.image} to {target.host}")
        attempt = controller.deploy(target, artifact, options)
        report_attempt(ctx, attempt)

    except ShipCtlError as e:
        ctx.fail(e)


@deploy.command("history")
@click.option("--host", help="Target host")
@click.option("--limit", default=20, help="Max results")
@pass_context
def history(ctx: ShipCtlContext, host: str | None, limit: int) -> None:
    """List deployment attempts against a host.

    \b
    Examples:
        shipctl deploy history --host 203.0.113.10
    """
    try:
        target = ctx.target(host)
        attempts = ctx.state.list(target=target.key, limit=limit)

        if not attempts:
            ctx.output.print_info(f"No deployments recorded for {target.host}")
            return

        current = ctx.state.current_artifact(target.key)
        if ctx.output_format == OutputFormat.TABLE:
            ctx.output.print_data(
                [attempt_row(a) for a in attempts],
                headers=["id", "artifact", "phase", "outcome", "error", "started", "duration", "rollback_of"],
                title=f"Deployments on {target.host}",
            )
            if current:
                ctx.output.print_info(f"Current artifact: {current.image}")
        else:
            ctx.output.print_data(
                {
                    "target": target.host,
                    "current_artifact": current.image if current else None,
                    "attempts": [a.to_dict() for a in attempts],
                }
            )

    except ShipCtlError as e:
        ctx.fail(e)


@deploy.command("status")
@click.argument("attempt_id")
@pass_context
def status(ctx: ShipCtlContext, attempt_id: str) -> None:
    """Show a deployment attempt.

    \b
    Examples:
        shipctl deploy status abc12345
    """
    try:
        attempt = ctx.state.load(attempt_id)

        if ctx.output_format != OutputFormat.TABLE:
            ctx.output.print_data(attempt.to_dict())
            return

        ctx.output.print_data(attempt_row(attempt), title=f"Attempt {attempt.id}")
        if attempt.message:
            ctx.output.print(f"Message: {escape(attempt.message)}")
        if attempt.decision:
            ctx.output.print(
                f"Rollback: {attempt.decision.current_artifact.image} -> "
                f"{attempt.decision.candidate_artifact.image}"
            )
        if attempt.rollback_attempt_id:
            ctx.output.print(f"Rolled back by attempt {attempt.rollback_attempt_id}")

        if attempt.events:
            ctx.output.print("\nRecent Events:")
            for event in attempt.events[-10:]:
                ctx.output.print(escape(f"  [{event.timestamp.strftime('%H:%M:%S')}] {event.event_type}: {event.message}"))

    except ShipCtlError as e:
        ctx.fail(e)
