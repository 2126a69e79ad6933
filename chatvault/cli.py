#!/usr/bin/env python3
"""
chatvault CLI — talk to a model, keep every conversation.

Every command has a short name and aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start           Start the HTTP API server
    chat            talk            Interactive chat in the terminal
    list            ls              List conversations (prunes empty ones)
    dump            export, backup  Write a JSON backup
    restore         import          Replace everything from a JSON backup
    prompt          system          Show or set the system prompt
    tap             log, tail       Watch the wire log
    info            stats           Show config and storage stats
"""

import argparse
import asyncio
import sys

from chatvault import __version__

CHAT_HELP = """\
  /new            start a new conversation
  /list           list conversations
  /open <id>      switch to a conversation
  /drop <n>       delete message n (1-based) and everything after it
  /quit           leave
"""


def _build(cfg):
    """Wire up store → service → controller from config."""
    from chatvault.backends import make_backend
    from chatvault.conversations import ConversationService
    from chatvault.session import SessionController
    from chatvault.storage.sqlite_store import SQLiteStore
    from chatvault.system_prompt import SystemPromptFile
    from chatvault.wiretap import WireLog

    store = SQLiteStore(cfg["storage"]["sqlite_path"], page_size=cfg["storage"].get("page_size", 50))
    service = ConversationService(store, preview_chars=cfg["conversations"].get("preview_chars", 100))
    return SessionController(
        service=service,
        backend=make_backend(cfg["backend"]),
        system_prompt=SystemPromptFile.from_config(cfg),
        wire=WireLog(cfg["wiretap"]["path"]),
    )


def _print_summaries(summaries, current):
    if not summaries:
        print("  (no conversations yet)")
        return
    for s in summaries:
        marker = "▶" if s.id == current else " "
        print(f"  {marker} [{s.id:>4}] {s.preview}  ({s.message_count} msgs)")


def _print_conversation(conversation):
    for i, msg in enumerate(conversation.messages, 1):
        print(f"  {i:>3} {msg.role.upper()}: {msg.content}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the HTTP API server."""
    import uvicorn
    from chatvault.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatvault v{__version__} on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']} ({cfg['backend']['model']})")
    print(f"  Store:   {cfg['storage']['sqlite_path']}")
    print()

    uvicorn.run(
        "chatvault.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


async def _chat_loop(controller, ctx):
    from chatvault.errors import ChatVaultError

    summaries = await controller.list_conversations(ctx)
    _print_summaries(summaries, ctx.current_conversation_id)
    _print_conversation(await controller.current_conversation(ctx))
    print(CHAT_HELP)

    while True:
        try:
            line = await asyncio.to_thread(input, "  you> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            cmd, _, arg = line.partition(" ")
            try:
                if cmd in ("/quit", "/exit", "/q"):
                    break
                elif cmd == "/new":
                    conv = await controller.new_conversation(ctx)
                    print(f"  new conversation [{conv.id}]")
                elif cmd == "/list":
                    summaries = await controller.list_conversations(ctx)
                    _print_summaries(summaries, ctx.current_conversation_id)
                elif cmd == "/open":
                    _print_conversation(await controller.select(ctx, int(arg)))
                elif cmd == "/drop":
                    conv = await controller.delete_message(ctx, int(arg) - 1)
                    _print_conversation(conv)
                else:
                    print(CHAT_HELP)
            except (ChatVaultError, ValueError, IndexError) as e:
                print(f"  ✗  {e}")
            continue

        printed = 0

        def sink(text: str):
            nonlocal printed
            sys.stdout.write(text[printed:])
            sys.stdout.flush()
            printed = len(text)

        sys.stdout.write("  ai> ")
        result = await controller.send_message(ctx, line, sink)
        print()
        if not result.ok:
            print(f"  ✗  model call failed: {result.error}")


def cmd_chat(args):
    """Interactive chat in the terminal."""
    from chatvault.config import get_config, setup_logging
    from chatvault.conversations import SessionContext

    cfg = get_config()
    setup_logging({"logging": {**cfg["logging"], "level": args.log_level}})
    controller = _build(cfg)
    ctx = SessionContext(current_conversation_id=args.conversation)
    try:
        asyncio.run(_chat_loop(controller, ctx))
    except KeyboardInterrupt:
        print("\n  [bye]")
    finally:
        if controller.wire:
            controller.wire.close()


def cmd_list(args):
    """List conversations, newest first."""
    from chatvault.config import get_config
    from chatvault.conversations import SessionContext

    controller = _build(get_config())
    ctx = SessionContext()
    summaries = asyncio.run(controller.list_conversations(ctx))
    _print_summaries(summaries, ctx.current_conversation_id)


def cmd_dump(args):
    """Write a JSON backup of every conversation and the system prompt."""
    from chatvault.backup import write_backup
    from chatvault.config import get_config

    controller = _build(get_config())
    doc = asyncio.run(controller.backup())
    write_backup(args.output, doc, pretty=args.pretty)
    print(f"  Dumped {len(doc['conversations'])} conversations to {args.output}")


def cmd_restore(args):
    """Replace the store and system prompt from a backup file."""
    from chatvault.backup import BackupFormatError, read_backup
    from chatvault.config import get_config
    from chatvault.conversations import SessionContext

    controller = _build(get_config())
    ctx = SessionContext()
    try:
        doc = read_backup(args.input)
        summaries = asyncio.run(controller.restore(ctx, doc))
    except (OSError, BackupFormatError) as e:
        print(f"  ✗  Restore failed: {e}")
        sys.exit(1)
    stored = asyncio.run(controller.service.store.count())
    print(f"  Restored {stored} conversations from {args.input}")
    _print_summaries(summaries, ctx.current_conversation_id)


def cmd_prompt(args):
    """Show or replace the system prompt."""
    from chatvault.config import get_config
    from chatvault.system_prompt import SystemPromptFile

    prompt = SystemPromptFile.from_config(get_config())
    if args.set is not None:
        prompt.set(args.set)
        print(f"  System prompt saved ({len(args.set)} chars)")
    elif args.file:
        with open(args.file, encoding="utf-8") as f:
            text = f.read()
        prompt.set(text)
        print(f"  System prompt loaded from {args.file} ({len(text)} chars)")
    else:
        print(prompt.get() or "  (no system prompt)")


def cmd_tap(args):
    """Watch the wire log."""
    from chatvault.wiretap import live_tap

    log_path = args.log
    if log_path is None:
        from chatvault.config import get_config
        log_path = get_config()["wiretap"]["path"]
    live_tap(
        log_path=log_path,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        conversation_filter=args.conv,
        raw=args.raw,
    )


def cmd_info(args):
    """Show config and storage stats at a glance."""
    from chatvault.config import get_config
    from chatvault.errors import StorageFault
    from chatvault.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    print(f"  chatvault v{__version__}")
    print("  Configuration")
    print(f"  ├─ Backend:   {cfg['backend']['url']}")
    print(f"  ├─ Model:     {cfg['backend']['model']}")
    print(f"  ├─ SQLite:    {cfg['storage']['sqlite_path']}")
    print(f"  ├─ Prompt:    {cfg['system_prompt']['path']}")
    print(f"  └─ Wire log:  {cfg['wiretap']['path']}")

    try:
        stats = asyncio.run(SQLiteStore(cfg["storage"]["sqlite_path"]).get_stats())
    except StorageFault as e:
        print(f"\n  Storage: unavailable ({e})")
        return

    print()
    print("  Storage")
    print(f"  ├─ Conversations: {stats['conversations']} ({stats['empty_conversations']} empty)")
    print(f"  ├─ Messages:      {stats['messages']}")
    print(f"  ├─ User msgs:     {stats['user_messages']}")
    print(f"  └─ Asst msgs:     {stats['assistant_messages']}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatvault",
        description="chatvault — talk to a model, keep every conversation.",
        epilog="Run 'chatvault <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatvault {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start"], "Start the HTTP API server", cmd_serve, setup_serve)

    def setup_chat(p):
        p.add_argument("--conversation", "-c", type=int, default=None, help="Conversation id to open")
        p.add_argument("--log-level", default="WARNING", help="Log level while chatting")

    _add_command(sub, ["chat", "talk"], "Interactive chat in the terminal", cmd_chat, setup_chat)

    _add_command(sub, ["list", "ls"], "List conversations (prunes empty ones)", cmd_list)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="chatvault-backup.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export", "backup"], "Write a JSON backup", cmd_dump, setup_dump)

    def setup_restore(p):
        p.add_argument("input", help="Backup file to restore")

    _add_command(sub, ["restore", "import"],
                 "Replace everything from a JSON backup", cmd_restore, setup_restore)

    def setup_prompt(p):
        group = p.add_mutually_exclusive_group()
        group.add_argument("--set", default=None, help="New system prompt text")
        group.add_argument("--file", "-f", default=None, help="Read the new system prompt from a file")

    _add_command(sub, ["prompt", "system"], "Show or set the system prompt", cmd_prompt, setup_prompt)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant", "fault"], default=None,
                       help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--conv", "-c", type=int, default=None, help="Only entries for this conversation id")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Watch the wire log", cmd_tap, setup_tap)

    _add_command(sub, ["info", "stats"], "Show config and storage stats", cmd_info)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
