from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from .domain.models import Project
from .errors import WorkboardError
from .events.ws import WebSocketHub, hub as live_hub
from .logging_utils import configure_logging
from .services import Services, build_services


def _resolve_data_dir(data_dir: Optional[str]) -> Path:
    return Path(data_dir).expanduser().resolve() if data_dir else Path.cwd().resolve()


def _ctx(data_dir: Optional[str], hub: Optional[WebSocketHub] = None) -> Services:
    return build_services(_resolve_data_dir(data_dir), hub=hub)


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0


def _project_create(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    project = Project(name=args.name, key=args.key.upper(), created_by=args.user)
    if args.user:
        project.members.append(args.user)
    services.container.projects.upsert(project)
    return _emit({'project': project.to_dict()})


def _project_list(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    return _emit({'projects': [p.to_dict() for p in services.container.projects.list()]})


def _task_create(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    task = services.tasks.create_task(
        args.project_id,
        args.title,
        created_by=args.user,
        description=args.description or '',
        priority=args.priority,
        parent_task_id=args.parent,
        milestone_id=args.milestone,
        phase_id=args.phase,
        due_date=args.due,
        assignee_ids=args.assignee or [],
    )
    return _emit({'task': task.to_dict()})


def _task_list(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    tasks = services.tasks.list_tasks(args.project_id, status=args.status, top_level_only=args.top_level)
    return _emit({'tasks': [task.to_dict() for task in tasks]})


def _task_status(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    task = services.tasks.update_status(args.task_id, args.status, actor_id=args.user)
    return _emit({'task': task.to_dict()})


def _task_depend(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    if args.remove:
        task = services.tasks.remove_dependency(args.task_id, args.depends_on)
    else:
        task = services.tasks.add_dependency(args.task_id, args.depends_on, args.type)
    return _emit({'task': task.to_dict()})


def _reminders_deadlines(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    results = services.notifications.send_deadline_reminders(days=args.days)
    return _emit({'sent': len(results), 'results': [r.to_dict() for r in results]})


def _reminders_milestones(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    results = services.notifications.send_milestone_reminders(days=args.days)
    return _emit({'sent': len(results), 'results': [r.to_dict() for r in results]})


def _notifications_cleanup(args: argparse.Namespace) -> int:
    services = _ctx(args.data_dir)
    return _emit({'deleted': services.notifications.cleanup_old_notifications(days=args.days)})


def _token(args: argparse.Namespace) -> int:
    from datetime import timedelta

    from .server.auth import create_access_token

    services = _ctx(args.data_dir)
    expires = timedelta(minutes=args.minutes) if args.minutes else None
    return _emit({'access_token': create_access_token(services.settings, args.user_id, expires), 'token_type': 'bearer'})


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .server.api import create_app

    services = _ctx(args.data_dir, hub=live_hub)
    configure_logging(args.log_level or services.settings.log_level)
    app = create_app(services=services, hub=live_hub)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Workboard task service CLI')
    parser.add_argument('--data-dir', default=None, help='Directory holding .workboard state (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Override the configured log level')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    token = subparsers.add_parser('token', help='Issue an access token for a user')
    token.add_argument('user_id')
    token.add_argument('--minutes', default=None, type=int)
    token.set_defaults(func=_token)

    project = subparsers.add_parser('project', help='Manage projects')
    project_sub = project.add_subparsers(dest='project_cmd', required=True)
    pcreate = project_sub.add_parser('create', help='Create a project')
    pcreate.add_argument('name')
    pcreate.add_argument('key')
    pcreate.add_argument('--user', default=None)
    pcreate.set_defaults(func=_project_create)
    plist = project_sub.add_parser('list', help='List projects')
    plist.set_defaults(func=_project_list)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('project_id')
    tcreate.add_argument('title')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--priority', default='medium', choices=['low', 'medium', 'high', 'urgent'])
    tcreate.add_argument('--parent', default=None, help='Parent task ID')
    tcreate.add_argument('--milestone', default=None)
    tcreate.add_argument('--phase', default=None)
    tcreate.add_argument('--due', default=None, help='Due date (ISO 8601)')
    tcreate.add_argument('--assignee', action='append', default=None)
    tcreate.add_argument('--user', default=None)
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('project_id')
    tlist.add_argument('--status', default=None)
    tlist.add_argument('--top-level', action='store_true')
    tlist.set_defaults(func=_task_list)
    tstatus = task_sub.add_parser('status', help='Change task status')
    tstatus.add_argument('task_id')
    tstatus.add_argument('status')
    tstatus.add_argument('--user', default=None)
    tstatus.set_defaults(func=_task_status)
    tdepend = task_sub.add_parser('depend', help='Add or remove a dependency')
    tdepend.add_argument('task_id')
    tdepend.add_argument('depends_on')
    tdepend.add_argument('--type', default='finish_to_start')
    tdepend.add_argument('--remove', action='store_true')
    tdepend.set_defaults(func=_task_depend)

    reminders = subparsers.add_parser('reminders', help='Run reminder sweeps')
    rem_sub = reminders.add_subparsers(dest='reminders_cmd', required=True)
    rdead = rem_sub.add_parser('deadlines', help='Remind assignees of tasks due soon')
    rdead.add_argument('--days', default=1, type=int)
    rdead.set_defaults(func=_reminders_deadlines)
    rmile = rem_sub.add_parser('milestones', help='Remind members of milestones due soon')
    rmile.add_argument('--days', default=3, type=int)
    rmile.set_defaults(func=_reminders_milestones)

    notifications = subparsers.add_parser('notifications', help='Maintain notifications')
    notif_sub = notifications.add_subparsers(dest='notifications_cmd', required=True)
    ncleanup = notif_sub.add_parser('cleanup', help='Delete read notifications older than N days')
    ncleanup.add_argument('--days', default=30, type=int)
    ncleanup.set_defaults(func=_notifications_cleanup)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    configure_logging(args.log_level or 'WARNING')
    try:
        return int(handler(args) or 0)
    except WorkboardError as exc:
        sys.stderr.write(json.dumps(exc.to_dict()) + '\n')
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
