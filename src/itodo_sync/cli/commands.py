# src/itodo_sync/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import cast

from ..core.errors import EntityNotFoundError, SyncError
from ..core.state import AppState
from ..storage.models import QueueItem, QueueStatus, Task, TaskList

CommandEmitter = Callable[[str], None]
CommandResult = str | Awaitable[str]
CommandHandler2 = Callable[[AppState, list[str]], CommandResult]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], CommandResult]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)

SHORT_ID = 8


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /status, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Handlers may be plain functions or coroutines.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        if nparams >= 3:
            result = cast(CommandHandler3, handler)(state, args, emit)
        else:
            result = cast(CommandHandler2, handler)(state, args)

        if inspect.isawaitable(result):
            return await result
        return result

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- formatting helpers ----


def _short(entity_id: str) -> str:
    return entity_id[:SHORT_ID]


def _fmt_ms(ms: int | None) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _fmt_item(item: QueueItem) -> str:
    err = f" err={item.last_error}" if item.last_error else ""
    return (
        f"  {_short(item.id)} {item.status.value:<10} {item.action.value:<6} "
        f"{item.entity_type.value:<8} {_short(item.entity_id)} retries={item.retry_count}"
        f" at={_fmt_ms(item.created_at)}{err}"
    )


def _fmt_task(task: Task) -> str:
    mark = "x" if task.completed else " "
    trash = " (trash)" if task.deleted else ""
    est = f" ~{task.estimate}" if task.estimate else ""
    return f"  [{mark}] {_short(task.id)} Q{task.quadrant}#{task.sort_order} {task.text}{est}{trash}"


def _fmt_list(task_list: TaskList) -> str:
    star = "*" if task_list.is_active else " "
    owner = task_list.owner_id or "local"
    return f"  {star} {_short(task_list.id)} {task_list.name} ({task_list.layout_mode}, owner={owner})"


def _resolve(prefix: str, ids: Sequence[str], what: str) -> str:
    """Accept a full id or an unambiguous prefix."""
    matches = [i for i in ids if i == prefix] or [i for i in ids if i.startswith(prefix)]
    if not matches:
        raise EntityNotFoundError(what, prefix)
    if len(matches) > 1:
        raise ValueError(f"Ambiguous {what} id prefix: {prefix}")
    return matches[0]


def _task_ids(state: AppState) -> list[str]:
    return [t.id for t in state.engine.get_tasks()]


def _list_ids(state: AppState) -> list[str]:
    return [tl.id for tl in state.engine.get_task_lists()]


# ---- commands ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    stats = state.engine.queue_stats()
    user = state.session.current_user_id() or "(signed out)"
    active = state.engine.get_active_task_list()
    remote = getattr(state.settings, "remote_url", None) if state.remote_enabled else "(offline-only)"
    return (
        "Status:\n"
        f"  User: {user}\n"
        f"  Network: {'online' if state.network.is_online else 'offline'}\n"
        f"  Remote: {remote}\n"
        f"  Active list: {active.name if active else '-'}\n"
        f"  Queue: pending={stats.pending} processing={stats.processing} "
        f"failed={stats.failed} completed={stats.completed}"
    )


def cmd_queue(state: AppState, args: list[str]) -> str:
    """
    /queue           -> pending + processing + failed items
    /queue failed    -> only failed items
    /queue all       -> the 20 most recent items of any status
    /queue clear     -> drop completed items
    """
    sub = args[0].lower() if args else ""

    if sub == "clear":
        n = state.engine.clear_completed()
        return f"Removed {n} completed items."

    if sub == "all":
        items = state.engine.queue.recent(20)
    elif sub in ("failed", "pending", "processing", "completed"):
        items = state.engine.queue.list_by_status(QueueStatus(sub))
    elif sub:
        return "Usage: /queue [failed|pending|processing|completed|all|clear]"
    else:
        status = state.engine.get_sync_status()
        items = status.processing + status.pending + status.failed

    if not items:
        return "Queue is empty."
    return "Queue:\n" + "\n".join(_fmt_item(i) for i in items)


def cmd_lists(state: AppState, args: list[str]) -> str:
    lists = state.engine.get_task_lists()
    if not lists:
        return "No task lists. Create one with /add-list <name>."
    return "Task lists (* = active):\n" + "\n".join(_fmt_list(tl) for tl in lists)


def cmd_tasks(state: AppState, args: list[str]) -> str:
    """
    /tasks            -> tasks of the active list
    /tasks <list>     -> tasks of another list (id prefix)
    /tasks trash      -> soft-deleted tasks
    """
    if args and args[0].lower() == "trash":
        trashed = state.engine.get_deleted_tasks()
        if not trashed:
            return "Trash is empty."
        return "Trash:\n" + "\n".join(_fmt_task(t) for t in trashed)

    if args:
        list_id = _resolve(args[0], _list_ids(state), "taskList")
    else:
        active = state.engine.get_active_task_list()
        if active is None:
            return "No active list. Use /activate <list> or /add-list <name>."
        list_id = active.id

    tasks = state.engine.get_tasks(list_id, include_trashed=False)
    if not tasks:
        return "No tasks."
    return "Tasks:\n" + "\n".join(_fmt_task(t) for t in tasks)


def cmd_add_list(state: AppState, args: list[str]) -> str:
    name = " ".join(args).strip()
    if not name:
        return "Usage: /add-list <name>"
    tl = state.engine.add_task_list(name)
    return f"List created: {_short(tl.id)} {tl.name}{' (active)' if tl.is_active else ''}"


def cmd_add_task(state: AppState, args: list[str]) -> str:
    """/add-task [q1..q4] <text>  (adds to the active list)"""
    quadrant = 1
    if args and len(args[0]) == 2 and args[0].lower().startswith("q") and args[0][1].isdigit():
        quadrant = int(args[0][1])
        args = args[1:]
    text = " ".join(args).strip()
    if not text:
        return "Usage: /add-task [q1..q4] <text>"
    task = state.engine.add_task(text, quadrant=quadrant)
    return f"Task added: {_short(task.id)} Q{task.quadrant} {task.text}"


def cmd_done(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /done <task>"
    task_id = _resolve(args[0], _task_ids(state), "task")
    current = state.engine.store.get(Task.entity_type, task_id)
    completed = 0 if isinstance(current, Task) and current.completed else 1
    task = state.engine.update_task(task_id, completed=completed)
    return f"Task {_short(task.id)} {'completed' if task.completed else 'reopened'}."


def cmd_rm(state: AppState, args: list[str]) -> str:
    """
    /rm <task>              -> move task to trash
    /rm <task> --permanent  -> tombstone task
    /rm list <list>         -> tombstone list and its tasks
    /rm restore <task>      -> restore a task from the trash
    """
    if not args:
        return "Usage: /rm <task> [--permanent] | /rm list <list> | /rm restore <task>"

    if args[0].lower() == "list" and len(args) > 1:
        list_id = _resolve(args[1], _list_ids(state), "taskList")
        tl = state.engine.delete_task_list(list_id)
        return f"List {_short(tl.id)} deleted."

    if args[0].lower() == "restore" and len(args) > 1:
        task_id = _resolve(args[1], [t.id for t in state.engine.get_deleted_tasks()], "task")
        task = state.engine.restore_task(task_id)
        return f"Task {_short(task.id)} restored."

    permanent = "--permanent" in args[1:]
    task_id = _resolve(args[0], _task_ids(state), "task")
    task = state.engine.delete_task(task_id, permanent=permanent)
    return f"Task {_short(task.id)} {'deleted permanently' if permanent else 'moved to trash'}."


def cmd_activate(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /activate <list>"
    list_id = _resolve(args[0], _list_ids(state), "taskList")
    tl = state.engine.set_active_task_list(list_id)
    return f"Active list: {tl.name}"


def cmd_login(state: AppState, args: list[str]) -> str:
    """/login <user_id> [access_token]"""
    if not args:
        return "Usage: /login <user_id> [access_token]"
    token = args[1] if len(args) > 1 else None
    state.session.sign_in(args[0], token)
    return f"Signed in as {args[0]}. Claim, pull and drain run in the background."


def cmd_logout(state: AppState, args: list[str]) -> str:
    if not state.session.is_authenticated:
        return "Not signed in."
    state.session.sign_out()
    return "Signed out. Local data stays on this device."


def cmd_online(state: AppState, args: list[str]) -> str:
    if not state.remote_enabled:
        return "No remote backend configured (set ITODO_REMOTE_URL)."
    state.network.set_online(True)
    return "Network: online."


def cmd_offline(state: AppState, args: list[str]) -> str:
    state.network.set_online(False)
    return "Network: offline."


async def cmd_sync(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/sync -> pull & merge, then drain the queue now."""
    if not state.session.is_authenticated:
        return "Sign in first (/login <user_id>)."
    if not state.network.is_online:
        return "Offline: nothing to do. Use /online when the network is back."

    if emit is not None:
        emit("[SYNC] Pulling remote changes...")
    try:
        pulled = await state.engine.pull()
    except SyncError as e:
        logger.warning("Manual pull failed: %s", e)
        pulled = None
        if emit is not None:
            emit(f"[SYNC] Pull failed: {e}")

    report = await state.engine.drain()
    lines = ["Sync finished:"]
    if pulled is not None:
        lines.append(
            f"  pull: inserted={pulled.inserted} overwritten={pulled.overwritten} "
            f"kept={pulled.kept} invalidated={pulled.invalidated}"
        )
    if report is None:
        lines.append("  push: a drain is already running")
    else:
        lines.append(
            f"  push: completed={report.completed} retried={report.retried} "
            f"failed={report.failed} skipped={report.skipped}"
        )
    return "\n".join(lines)


def cmd_retry(state: AppState, args: list[str]) -> str:
    """/retry <item> | /retry all"""
    if not args:
        return "Usage: /retry <item> | /retry all"
    if args[0].lower() == "all":
        n = state.engine.retry_all_failed()
        return f"Requeued {n} failed items."
    failed_ids = [i.id for i in state.engine.queue.list_by_status(QueueStatus.FAILED)]
    item_id = _resolve(args[0], failed_ids, "queue item")
    state.engine.retry_failed_item(item_id)
    return f"Item {_short(item_id)} requeued."


def cmd_drop(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /drop <item>"
    ids = [i.id for i in state.engine.queue.recent(500)]
    item_id = _resolve(args[0], ids, "queue item")
    if state.engine.delete_queue_item(item_id):
        return f"Item {_short(item_id)} dropped."
    return f"Item {_short(item_id)} was already gone."


def _register_defaults(reg: CommandRegistry) -> None:
    reg.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
    reg.register("status", cmd_status, help_text="Show session, network and queue counts.")
    reg.register("queue", cmd_queue, help_text="Inspect the sync queue: /queue [failed|all|clear].")
    reg.register("lists", cmd_lists, help_text="Show task lists.")
    reg.register("tasks", cmd_tasks, help_text="Show tasks: /tasks [list] | /tasks trash.")
    reg.register("add-list", cmd_add_list, help_text="Create a task list: /add-list <name>.")
    reg.register("add-task", cmd_add_task, help_text="Add a task: /add-task [q1..q4] <text>.", aliases=["add"])
    reg.register("done", cmd_done, help_text="Toggle completion: /done <task>.")
    reg.register("rm", cmd_rm, help_text="Delete: /rm <task> [--permanent] | /rm list <list> | /rm restore <task>.")
    reg.register("activate", cmd_activate, help_text="Make a list active: /activate <list>.")
    reg.register("login", cmd_login, help_text="Sign in: /login <user_id> [access_token].")
    reg.register("logout", cmd_logout, help_text="Sign out.")
    reg.register("online", cmd_online, help_text="Mark the network as online (triggers a drain).")
    reg.register("offline", cmd_offline, help_text="Mark the network as offline.")
    reg.register("sync", cmd_sync, help_text="Pull & merge, then push the queue now.")
    reg.register("retry", cmd_retry, help_text="Retry failed items: /retry <item> | /retry all.")
    reg.register("drop", cmd_drop, help_text="Delete a queue item: /drop <item>.")


_register_defaults(registry)
