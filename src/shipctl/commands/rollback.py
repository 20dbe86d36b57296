"""Rollback command."""

import click

from shipctl.core.context import pass_context, ShipCtlContext
from shipctl.core.exceptions import ShipCtlError
from shipctl.core.output import OutputFormat


@click.command()
@click.option("--host", help="Target host (defaults to SHIPCTL_HOST / SERVER_HOST)")
@click.option("--user", help="SSH user")
@click.option("--docker-user", help="Registry namespace (defaults to DOCKER_USERNAME)")
@click.option("--tag", help="Roll back to this tag instead of the previous one")
@click.option("--list-tags", is_flag=True, help="List recent tags and exit")
@click.option("--health-attempts", type=int, help="Health polls before giving up")
@click.option("--health-interval", type=float, help="Seconds between health polls")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def rollback(
    ctx: ShipCtlContext,
    host: str | None,
    user: str | None,
    docker_user: str | None,
    tag: str | None,
    list_tags: bool,
    health_attempts: int | None,
    health_interval: float | None,
    yes: bool,
) -> None:
    """Roll the service back to a previously published image tag.

    Without --tag the most recent published tag other than the one currently
    deployed on the host (and other than moving aliases such as 'latest') is
    chosen.

    \b
    Examples:
        shipctl rollback --host 203.0.113.10 --list-tags
        shipctl rollback --host 203.0.113.10 --yes
        shipctl rollback --host 203.0.113.10 --tag v1.0.0
    """
    try:
        repository = ctx.repository(docker_user)

        if list_tags:
            _print_tags(ctx, repository, host)
            return

        target = ctx.target(host, user)
        controller = ctx.controller(interactive=not yes)
        options = controller.default_options(
            health_attempts=health_attempts,
            health_interval=health_interval,
        )

        if ctx.dry_run:
            current_tag = controller.current_tag(target, repository)
            if tag:
                decision = ctx.selector.decision_for_tag(repository, current_tag, tag)
            else:
                decision = ctx.selector.select_rollback(repository, current_tag)
            ctx.log_dry_run(
                "rollback",
                {"host": target.host, "from": decision.current_artifact.tag, "to": decision.candidate_artifact.tag},
            )
            return

        decision, attempt, summary = controller.rollback(
            target,
            repository,
            tag=tag,
            confirmed=yes,
            options=options,
        )

        ctx.output.print_data(summary.to_dict(), title="Rollback Summary")
        if attempt.succeeded:
            ctx.output.print_success(f"Rolled back to {decision.candidate_artifact.image}")
        else:
            ctx.output.print_failure(attempt.error_kind or "DeploymentError", attempt.message)
            raise click.Abort()

    except ShipCtlError as e:
        ctx.fail(e)


def _print_tags(ctx: ShipCtlContext, repository: str, host: str | None) -> None:
    tags = ctx.registry.list_tags(repository)
    aliases = set(ctx.profile.registry.mutable_aliases)

    current_tag = None
    if host or ctx.profile.target.get_host():
        current_tag = ctx.controller(interactive=False).current_tag(ctx.target(host), repository)

    rows = []
    for t in tags:
        if t.name == current_tag:
            note = "current"
        elif t.name in aliases:
            note = "alias"
        else:
            note = ""
        rows.append({
            "tag": t.name,
            "last_updated": t.last_updated.strftime("%Y-%m-%d %H:%M") if t.last_updated else "",
            "note": note,
        })

    if not rows:
        ctx.output.print_info(f"No tags found for {repository}")
        return

    if ctx.output_format == OutputFormat.TABLE:
        ctx.output.print_data(rows, headers=["tag", "last_updated", "note"], title=f"Tags of {repository}")
    else:
        ctx.output.print_data([t.to_dict() for t in tags])
