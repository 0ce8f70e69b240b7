import sys
import os
import functools
import click
from pathlib import Path
from rich import print, reconfigure
from rich.console import Console
from rich.table import Table
from rich import box

from rekur import __version__ as VERSION
from rekur.controller import Controller
from rekur.errors import RekurError, TimezoneError
from rekur.model import DatabaseManager
from rekur.models import TaskPriority, TaskQuery, TaskStatus
from rekur.rekur_env import RekurEnvironment, render_config
from rekur.scope import EditResult, TaskChanges
from rekur.shared import REPEATING, relative_to_now, truncate_string
from rekur.shortcuts import (
    SHORTCUTS,
    compile_recurrence,
    parse_date_input,
    parse_time_of_day,
    series_start,
)
from rekur.timezones import (
    common_timezones,
    normalize_timezone_input,
    observes_dst,
    suggest_timezone,
    timezone_abbreviation,
    timezone_offset,
    validate_timezone,
)

console = Console()

PRIORITIES = [str(p) for p in TaskPriority]
SCOPES = ["occurrence", "future", "series"]


def ensure_database(db_path: str, env: RekurEnvironment):
    if not Path(db_path).exists():
        print(f"[yellow]⚠️ [/yellow]Database not found. Creating new database at {db_path}")
        dbm = DatabaseManager(db_path, env)
        dbm.close()


def report_errors(func):
    """Print RekurError messages in red and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TimezoneError as e:
            print(f"[red]✘ {e}[/red]")
            if e.suggestions:
                print(f"  Did you mean: {', '.join(e.suggestions)}?")
            sys.exit(1)
        except RekurError as e:
            print(f"[red]✘ {e}[/red]")
            sys.exit(1)

    return wrapper


def get_controller(ctx) -> Controller:
    return Controller(ctx.obj["DB"], ctx.obj["ENV"], config=ctx.obj["CONFIG"])


def _zone(timezone: str | None) -> str | None:
    return validate_timezone(normalize_timezone_input(timezone)) if timezone else None


def _changes(
    ctrl: Controller, name, description, priority, project, tag, untag, recur=None, timezone=None
) -> TaskChanges:
    return TaskChanges(
        name=name,
        description=description,
        priority=TaskPriority(priority) if priority else None,
        project_id=ctrl.project_id(project),
        add_tags=list(tag),
        remove_tags=list(untag),
        rrule=compile_recurrence(recur) if recur else None,
        timezone=_zone(timezone),
    )


def task_table(ctrl: Controller, tasks, title: str | None = None) -> Table:
    projects = {p.id: p.name for p in ctrl.list_projects()}
    now = ctrl.now()
    table = Table(title=title, box=box.SIMPLE_HEAD, expand=False)
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("due", no_wrap=True)
    table.add_column("", no_wrap=True)
    table.add_column("pri")
    table.add_column("name")
    table.add_column("tags", style="magenta")
    table.add_column("project", style="green")
    for task in tasks:
        due = ctrl.fmt_user(task.due_at) if task.due_at else ""
        when = relative_to_now(task.due_at, now)
        style = "red" if task.is_open and task.due_at and task.due_at < now else None
        table.add_row(
            task.short_id,
            f"{due} ({when})" if when else due,
            REPEATING if task.is_instance else "",
            "" if task.priority == TaskPriority.NONE else str(task.priority),
            truncate_string(task.name, 48),
            " ".join(f"#{t}" for t in task.tags),
            projects.get(task.project_id, ""),
            style=style,
        )
    return table


def print_edit_result(ctrl: Controller, result):
    if not isinstance(result, EditResult):
        print(f"[green]✔ Updated task[/green] {result.short_id} {result.name}")
        return
    scope = type(result.scope).__name__
    print(f"[green]✔ Edited ({scope})[/green] series {result.series.short_id}")
    if result.new_series is not None:
        print(f"  New series {result.new_series.short_id} starts {ctrl.fmt_user(result.new_series.dtstart, result.new_series.timezone)}")
    if result.updated_instances:
        print(f"  {result.updated_instances} instance(s) updated")
    for exc in result.orphaned:
        print(
            f"[yellow]  ⚠️ {exc.kind} exception at {ctrl.fmt_user(exc.occurrence_dt)}"
            " no longer matches the rule[/yellow]"
        )


@click.group()
@click.version_option(VERSION, prog_name="rekur", message="%(prog)s version %(version)s")
@click.option(
    "--home",
    help="Override the rekur workspace directory (equivalent to setting $REKUR_HOME).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, home, verbose):
    """Rekur CLI – recurring tasks from the command line."""
    if home:
        os.environ["REKUR_HOME"] = home  # Must be set before RekurEnvironment is instantiated

    env = RekurEnvironment()
    env.ensure(init_config=True, init_db_fn=lambda path: ensure_database(path, env))
    config = env.load_config()
    if not config.ui.color:
        console.no_color = True
        reconfigure(no_color=True)

    ctx.ensure_object(dict)
    ctx.obj["ENV"] = env
    ctx.obj["DB"] = env.db_path
    ctx.obj["CONFIG"] = config
    ctx.obj["VERBOSE"] = verbose


# ─── Tasks ─────────────────────────────────────────────────────────


@cli.command()
@click.argument("name", nargs=-1, required=True)
@click.option("--description", "-d", help="Longer description.")
@click.option("--due", help="Due date/time, e.g. '2025-01-06 14:00' or 'tomorrow 9am'.")
@click.option("--priority", type=click.Choice(PRIORITIES), help="Task priority.")
@click.option("--project", "-p", help="Project name (created when new).")
@click.option("--tag", "-t", multiple=True, help="Tag; repeat for more.")
@click.option("--depends", multiple=True, help="Id of a task this one waits for.")
@click.option(
    "--recur",
    "-r",
    help=f"Recurrence: {', '.join(SHORTCUTS)} or a rule such as 'FREQ=WEEKLY;BYDAY=MO'.",
)
@click.option("--every", type=int, help="Interval, e.g. --every 2 for every other week.")
@click.option("--on", "on_days", help="Days, e.g. 'mon,wed,fri' or 'weekdays'.")
@click.option("--at", "at_time", help="Time of day for a recurring task (default 09:00).")
@click.option("--start", help="First date of a recurring task (default today).")
@click.option("--until", help="Last date of a recurring task.")
@click.option("--count", type=int, help="Number of occurrences.")
@click.option("--timezone", "--tz", "timezone", help="IANA zone of the recurrence.")
@click.pass_context
@report_errors
def add(ctx, name, description, due, priority, project, tag, depends, recur, every, on_days, at_time, start, until, count, timezone):
    """Add a task, or a recurring task with --recur / --on."""
    ctrl = get_controller(ctx)
    title = " ".join(name)
    zone = _zone(timezone) or ctrl.timezone
    recurring = bool(recur or on_days)
    if not recurring and (every or until or count or at_time or start or timezone):
        raise click.UsageError("--every, --at, --start, --until, --count and --timezone need --recur or --on")

    if not recurring:
        task = ctrl.add_task(
            title,
            description=description,
            due=ctrl.parse_when(due) if due else None,
            priority=priority,
            project=project,
            tags=tag,
            depends_on=depends,
        )
        print(f"[green]✔ Added task[/green] {task.short_id} {task.name}")
        if task.due_at:
            print(f"  due {ctrl.fmt_user(task.due_at)}")
        return

    local_today = ctrl.parse_when("today", zone).date()
    rule = compile_recurrence(
        recur,
        every=every,
        on=on_days,
        until=parse_date_input(until, local_today, ctrl.dayfirst, ctrl.yearfirst) if until else None,
        count=count,
    )
    if due:
        dtstart = ctrl.parse_when(due, zone)
    else:
        day = parse_date_input(start, local_today, ctrl.dayfirst, ctrl.yearfirst) if start else local_today
        dtstart = series_start(day, parse_time_of_day(at_time) if at_time else None)
    template, series = ctrl.add_recurring_task(
        title,
        rule,
        dtstart,
        timezone=zone,
        description=description,
        priority=priority,
        project=project,
        tags=tag,
    )
    _, _, _, summary = ctrl.series_details(series.id)
    print(f"[green]✔ Added recurring task[/green] {template.short_id} {template.name}")
    print(f"  series {series.short_id}: {summary} ({series.rrule}) in {series.timezone}")
    for occ in ctrl.preview_series(series.id, limit=3):
        print(f"  next: {ctrl.fmt_user(occ.effective_at, series.timezone)}")


@cli.command("list")
@click.option(
    "--status",
    type=click.Choice([str(s) for s in TaskStatus] + ["all"]),
    help="Status to show (default from config: pending).",
)
@click.option("--all", "show_all", is_flag=True, help="Every status.")
@click.option("--project", "-p", help="Only this project.")
@click.option("--tag", "-t", multiple=True, help="Only tasks with this tag.")
@click.option("--exclude-tag", "-x", multiple=True, help="Hide tasks with this tag.")
@click.option("--priority", type=click.Choice(PRIORITIES))
@click.option("--due-after", help="Due at or after this date/time.")
@click.option("--due-before", help="Due at or before this date/time.")
@click.option("--overdue", is_flag=True, help="Pending tasks past their due time.")
@click.option("--series", "series_ref", help="Only instances of this series.")
@click.option("--templates", is_flag=True, help="Include series templates.")
@click.option("--limit", "-n", type=int, help="Maximum rows.")
@click.pass_context
@report_errors
def list_tasks(ctx, status, show_all, project, tag, exclude_tag, priority, due_after, due_before, overdue, series_ref, templates, limit):
    """List tasks, materializing recurring ones first."""
    ctrl = get_controller(ctx)
    defaults = ctrl.config.default_filters
    status = "all" if show_all else (status or defaults.status)
    query = TaskQuery(
        status=None if status == "all" else TaskStatus(status),
        project=project,
        tags=list(tag),
        exclude_tags=list(exclude_tag),
        priority=TaskPriority(priority) if priority else None,
        due_after=ctrl.parse_when(due_after) if due_after else None,
        due_before=ctrl.parse_when(due_before) if due_before else None,
        overdue=overdue,
        series_id=ctrl.series_for(series_ref).id if series_ref else None,
        include_templates=templates,
        limit=limit or defaults.limit,
    )
    tasks = ctrl.list_tasks(query)
    summary = ctrl.last_summary
    if summary is not None and not summary.ok:
        for error in summary.errors:
            print(f"[yellow]⚠️ {error}[/yellow]")
    if not tasks:
        print("No matching tasks.")
        return
    console.print(task_table(ctrl, tasks))
    if ctx.obj["VERBOSE"] and summary is not None:
        print(
            f"[dim]{summary.instances_created} instance(s) materialized"
            f" in {summary.duration_ms}ms[/dim]"
        )


@cli.command()
@click.argument("ref")
@click.pass_context
@report_errors
def show(ctx, ref):
    """Show one task."""
    ctrl = get_controller(ctx)
    task = ctrl.get_task(ref)
    print(f"[bold]{task.name}[/bold]")
    print(f"  id:        {task.id}")
    print(f"  status:    {task.status}")
    print(f"  priority:  {task.priority}")
    if task.due_at:
        print(f"  due:       {ctrl.fmt_user(task.due_at)} ({relative_to_now(task.due_at, ctrl.now())})")
    if task.description:
        print(f"  notes:     {task.description}")
    if task.tags:
        print(f"  tags:      {' '.join('#' + t for t in task.tags)}")
    if task.depends_on:
        print(f"  waits for: {', '.join(ctrl.get_task(d).short_id for d in task.depends_on)}")
    if task.is_instance:
        series = ctrl.get_series(task.series_id)
        print(f"  series:    {series.short_id} {REPEATING}")
        if task.occurrence_dt and task.occurrence_dt != task.due_at:
            print(f"  moved from {ctrl.fmt_user(task.occurrence_dt, series.timezone)}")


@cli.command()
@click.argument("refs", nargs=-1, required=True)
@click.pass_context
@report_errors
def done(ctx, refs):
    """Complete tasks; for a recurring task, show what comes next."""
    ctrl = get_controller(ctx)
    for ref in refs:
        result = ctrl.complete_task(ref)
        print(f"[green]✔ Completed[/green] {result.completed.short_id} {result.completed.name}")
        if result.series_id is not None:
            if result.next_task is not None:
                print(
                    f"  next: {result.next_task.short_id}"
                    f" due {ctrl.fmt_user(result.next_task.due_at)}"
                )
            elif result.next_occurrence is not None:
                print(f"  next occurrence {ctrl.fmt_user(result.next_occurrence)}")
            else:
                print("  the series has no further occurrences")


@cli.command()
@click.argument("ref")
@click.pass_context
@report_errors
def cancel(ctx, ref):
    """Cancel a task without completing it."""
    task = get_controller(ctx).cancel_task(ref)
    print(f"[green]✔ Cancelled[/green] {task.short_id} {task.name}")


@cli.command()
@click.argument("ref")
@click.pass_context
@report_errors
def reopen(ctx, ref):
    """Return a completed or cancelled task to pending."""
    task = get_controller(ctx).reopen_task(ref)
    print(f"[green]✔ Reopened[/green] {task.short_id} {task.name}")


@cli.command()
@click.argument("ref")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
@report_errors
def delete(ctx, ref, yes):
    """Delete a task. A deleted occurrence is skipped from then on."""
    ctrl = get_controller(ctx)
    task = ctrl.get_task(ref)
    if not yes and not click.confirm(f"Delete {task.short_id} {task.name}?"):
        return
    ctrl.delete_task(task.id)
    print(f"[green]✔ Deleted[/green] {task.short_id} {task.name}")


@cli.command()
@click.argument("ref")
@click.option("--name", help="New name.")
@click.option("--description", "-d", help="New description.")
@click.option("--priority", type=click.Choice(PRIORITIES))
@click.option("--project", "-p", help="Move to this project.")
@click.option("--tag", "-t", multiple=True, help="Add a tag.")
@click.option("--untag", multiple=True, help="Remove a tag.")
@click.option("--due", help="New due date/time (plain tasks only).")
@click.option("--recur", "-r", help="New recurrence (future or series scope).")
@click.option("--timezone", "--tz", "timezone", help="New zone (future or series scope).")
@click.option(
    "--scope",
    type=click.Choice(SCOPES),
    help="Required for an occurrence of a recurring task.",
)
@click.pass_context
@report_errors
def edit(ctx, ref, name, description, priority, project, tag, untag, due, recur, timezone, scope):
    """Edit a task. Occurrences of a series need --scope."""
    ctrl = get_controller(ctx)
    changes = _changes(ctrl, name, description, priority, project, tag, untag, recur, timezone)
    result = ctrl.edit_task(
        ref, changes, scope=scope, due=ctrl.parse_when(due) if due else None
    )
    print_edit_result(ctrl, result)


@cli.command()
@click.argument("ref")
@click.option("--at", help="Occurrence to skip when REF is a series.")
@click.option("--note", help="Why it is skipped.")
@click.pass_context
@report_errors
def skip(ctx, ref, at, note):
    """Skip one occurrence of a recurring task."""
    ctrl = get_controller(ctx)
    when = None
    if at:
        when = ctrl.parse_when(at, ctrl.series_for(ref).timezone)
    exc = ctrl.skip_occurrence(ref, at=when, notes=note)
    print(f"[green]✔ Skipped[/green] {ctrl.fmt_user(exc.occurrence_dt)}")


@cli.command()
@click.argument("ref")
@click.argument("to")
@click.option("--at", help="Occurrence to move when REF is a series.")
@click.option("--note", help="Why it moved.")
@click.pass_context
@report_errors
def move(ctx, ref, to, at, note):
    """Move one occurrence of a recurring task to another time."""
    ctrl = get_controller(ctx)
    zone = ctrl.series_for(ref).timezone
    when = ctrl.parse_when(at, zone) if at else None
    exc = ctrl.move_occurrence(ref, ctrl.parse_when(to, zone), at=when, notes=note)
    print(
        f"[green]✔ Moved[/green] {ctrl.fmt_user(exc.occurrence_dt)}"
        f" → {ctrl.fmt_user(exc.target_at)}"
    )


@cli.command()
@click.argument("ref")
@click.option("--at", multiple=True, help="Occurrence to restore; repeat for more (default: all).")
@click.pass_context
@report_errors
def restore(ctx, ref, at):
    """Remove skips and moves so occurrences follow the rule again."""
    ctrl = get_controller(ctx)
    zone = ctrl.series_for(ref).timezone
    instants = [ctrl.parse_when(a, zone) for a in at] if at else None
    removed = ctrl.remove_exceptions(ref, instants)
    print(f"[green]✔ Removed[/green] {removed} exception(s)")


@cli.command()
@click.argument("ref")
@click.argument("on")
@click.option("--remove", is_flag=True, help="Drop the dependency instead.")
@click.pass_context
@report_errors
def depend(ctx, ref, on, remove):
    """Make REF wait for ON."""
    ctrl = get_controller(ctx)
    if remove:
        found = ctrl.remove_dependency(ref, on)
        print("[green]✔ Removed dependency[/green]" if found else "No such dependency.")
        return
    task, other = ctrl.add_dependency(ref, on)
    print(f"[green]✔[/green] {task.short_id} now waits for {other.short_id}")


@cli.command()
@click.pass_context
@report_errors
def projects(ctx):
    """List projects."""
    for project in get_controller(ctx).list_projects():
        print(f"{project.name}  [dim]{project.description or ''}[/dim]")


@cli.command()
@click.pass_context
@report_errors
def tags(ctx):
    """List tags with their task counts."""
    for name, count in get_controller(ctx).list_tags():
        print(f"#{name}  {count}")


@cli.command()
@click.pass_context
@report_errors
def materialize(ctx):
    """Create the instances due within the lookahead window now."""
    summary = get_controller(ctx).materialize()
    print(
        f"{summary.series_processed} series, {summary.instances_created} instance(s)"
        f" created in {summary.duration_ms}ms"
    )
    for error in summary.errors:
        print(f"[red]✘ {error}[/red]")
    if not summary.ok:
        sys.exit(1)


# ─── Series ────────────────────────────────────────────────────────


@cli.group()
def series():
    """Inspect and manage recurring series."""


@series.command("list")
@click.option("--active", is_flag=True, help="Only active series.")
@click.pass_context
@report_errors
def series_list(ctx, active):
    ctrl = get_controller(ctx)
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("name")
    table.add_column("rule")
    table.add_column("zone")
    table.add_column("state")
    for s, template in ctrl.list_series(active_only=active):
        table.add_row(
            s.short_id,
            truncate_string(template.name, 40),
            s.rrule,
            s.timezone,
            "active" if s.active else "[dim]paused[/dim]",
        )
    console.print(table)


@series.command("show")
@click.argument("ref")
@click.pass_context
@report_errors
def series_show(ctx, ref):
    """Rule, zone, boundary and exceptions of a series."""
    ctrl = get_controller(ctx)
    s, template, exceptions, summary = ctrl.series_details(ref)
    print(f"[bold]{template.name}[/bold] {REPEATING}")
    print(f"  id:       {s.id}")
    print(f"  rule:     {s.rrule}  ({summary})")
    print(f"  zone:     {s.timezone} ({timezone_offset(s.timezone)})")
    print(f"  starts:   {ctrl.fmt_user(s.dtstart, s.timezone)}")
    print(f"  boundary: {ctrl.fmt_user(s.last_materialized_until, s.timezone)}")
    print(f"  state:    {'active' if s.active else 'paused'}")
    if s.split_from:
        print(f"  split from {s.split_from}")
    for exc in exceptions:
        line = f"  {exc.kind:8} {ctrl.fmt_user(exc.occurrence_dt, s.timezone)}"
        if exc.target_at and exc.target_at != exc.occurrence_dt:
            line += f" → {ctrl.fmt_user(exc.target_at, s.timezone)}"
        if exc.notes:
            line += f"  [dim]{exc.notes}[/dim]"
        print(line)


@series.command("preview")
@click.argument("ref")
@click.option("--limit", "-n", type=int, default=10, show_default=True)
@click.option("--from", "start", help="Start of the preview (default now).")
@click.pass_context
@report_errors
def series_preview(ctx, ref, limit, start):
    """Upcoming occurrences with skips and moves applied."""
    ctrl = get_controller(ctx)
    zone = ctrl.series_for(ref).timezone
    begin = ctrl.parse_when(start, zone) if start else None
    for occ in ctrl.preview_series(ref, limit=limit, start=begin):
        flag = f"  [yellow]{occ.kind}[/yellow]" if occ.kind else ""
        print(f"{ctrl.fmt_user(occ.effective_at, zone)} {timezone_abbreviation(zone, occ.effective_at)}{flag}")


@series.command("stats")
@click.argument("ref")
@click.pass_context
@report_errors
def series_stats(ctx, ref):
    ctrl = get_controller(ctx)
    stats = ctrl.series_statistics(ref)
    print(f"instances:  {stats.total_instances}")
    print(f"  completed {stats.completed_instances}, pending {stats.pending_instances}, cancelled {stats.cancelled_instances}")
    print(f"exceptions: {stats.skip_count} skip, {stats.override_count} override, {stats.move_count} move")
    print(f"completion: {stats.completion_rate:.0%}   health: {stats.health_score:.2f}")
    if stats.next_occurrence:
        print(f"next:       {ctrl.fmt_user(stats.next_occurrence)}")


@series.command("edit")
@click.argument("ref")
@click.option("--name", help="New name.")
@click.option("--description", "-d", help="New description.")
@click.option("--priority", type=click.Choice(PRIORITIES))
@click.option("--project", "-p")
@click.option("--tag", "-t", multiple=True)
@click.option("--untag", multiple=True)
@click.option("--recur", "-r", help="New recurrence.")
@click.option("--timezone", "--tz", "timezone", help="New zone.")
@click.option("--scope", type=click.Choice(SCOPES), default="series", show_default=True)
@click.option("--at", help="Occurrence for the occurrence and future scopes.")
@click.pass_context
@report_errors
def series_edit(ctx, ref, name, description, priority, project, tag, untag, recur, timezone, scope, at):
    """Edit a series, one occurrence of it, or it from an occurrence onward."""
    ctrl = get_controller(ctx)
    zone = ctrl.series_for(ref).timezone
    changes = _changes(ctrl, name, description, priority, project, tag, untag, recur, timezone)
    when = ctrl.parse_when(at, zone) if at else None
    print_edit_result(ctrl, ctrl.edit_series(ref, changes, scope=scope, at=when))


@series.command("pause")
@click.argument("ref")
@click.pass_context
@report_errors
def series_pause(ctx, ref):
    s = get_controller(ctx).pause_series(ref)
    print(f"[green]✔ Paused[/green] series {s.short_id}")


@series.command("resume")
@click.argument("ref")
@click.pass_context
@report_errors
def series_resume(ctx, ref):
    s = get_controller(ctx).resume_series(ref)
    print(f"[green]✔ Resumed[/green] series {s.short_id}")


@series.command("duplicate")
@click.argument("ref")
@click.option("--name", help="Name for the copy.")
@click.option("--timezone", "--tz", "timezone", help="Zone for the copy.")
@click.pass_context
@report_errors
def series_duplicate(ctx, ref, name, timezone):
    s = get_controller(ctx).duplicate_series(ref, name=name, timezone=_zone(timezone))
    print(f"[green]✔ Duplicated[/green] as series {s.short_id}")


@series.command("archive")
@click.argument("ref")
@click.pass_context
@report_errors
def series_archive(ctx, ref):
    s = get_controller(ctx).archive_series(ref)
    print(f"[green]✔ Archived[/green] series {s.short_id}")


@series.command("delete")
@click.argument("ref")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
@report_errors
def series_delete(ctx, ref, yes):
    """Delete a series with its template, instances and exceptions."""
    ctrl = get_controller(ctx)
    s = ctrl.series_for(ref)
    if not yes and not click.confirm(f"Delete series {s.short_id} and all its instances?"):
        return
    removed = ctrl.delete_series(s.id)
    print(f"[green]✔ Deleted[/green] series {s.short_id} and {removed} instance(s)")


@series.command("rollback")
@click.argument("ref")
@click.option("--to", help="New boundary (default: clear it).")
@click.pass_context
@report_errors
def series_rollback(ctx, ref, to):
    """Move the materialization boundary back so occurrences are revisited."""
    ctrl = get_controller(ctx)
    zone = ctrl.series_for(ref).timezone
    s = ctrl.rollback_boundary(ref, ctrl.parse_when(to, zone) if to else None)
    print(f"[green]✔ Boundary[/green] {ctrl.fmt_user(s.last_materialized_until, zone)}")


# ─── Timezones and config ──────────────────────────────────────────


@cli.group()
def timezones():
    """Timezone helpers."""


@timezones.command("list")
def timezones_list():
    """Common zones with their current offsets."""
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("zone")
    table.add_column("offset")
    table.add_column("abbr")
    table.add_column("dst")
    for name in common_timezones():
        table.add_row(
            name,
            timezone_offset(name),
            timezone_abbreviation(name),
            "yes" if observes_dst(name) else "",
        )
    console.print(table)


@timezones.command("check")
@click.argument("name")
@report_errors
def timezones_check(name):
    """Validate a zone name, suggesting close matches when it is unknown."""
    zone = validate_timezone(normalize_timezone_input(name))
    print(f"[green]✔[/green] {zone} ({timezone_offset(zone)}, {timezone_abbreviation(zone)})")


@timezones.command("suggest")
@click.argument("name")
def timezones_suggest(name):
    for zone in suggest_timezone(name):
        print(zone)


@cli.command()
@click.pass_context
def config(ctx):
    """Show the effective configuration."""
    env = ctx.obj["ENV"]
    print(f"[dim]# {env.config_path}[/dim]")
    click.echo(render_config(ctx.obj["CONFIG"]), nl=False)
