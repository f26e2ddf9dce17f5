#!/usr/bin/env python3
"""
chatline CLI — talk to a local model, keep every conversation.

Every command has a short name and an alias:

    COMMAND     ALIAS       WHAT IT DOES
    -------     -----       ----------------------------------
    serve       start       Start the HTTP server (API + relay)
    chat        talk        Chat in the terminal, streaming replies
    list        ls          List conversations, newest first
    show        cat         Print a conversation transcript
    rename      mv          Rename a conversation
    delete      rm          Delete a conversation
    ping        health      Check the Ollama backend and list models
"""

import argparse
import asyncio
import sys

from chatline import __version__

BANNER = r"""
      _           _   _ _
  ___| |__   __ _| |_| (_)_ __   ___
 / __| '_ \ / _` | __| | | '_ \ / _ \
| (__| | | | (_| | |_| | | | | |  __/
 \___|_| |_|\__,_|\__|_|_|_| |_|\___|   v""" + __version__ + "\n"


def _store(cfg):
    from chatline.main import build_store
    return build_store(cfg)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatline server."""
    import uvicorn
    from chatline.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print(f"  Model:   {cfg['backend']['default_model']}")
    print()

    uvicorn.run(
        "chatline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


async def _chat_loop(args):
    from chatline.config import get_config, get_runtime_config, update_runtime_config
    from chatline.controller import ConversationController
    from chatline.main import build_backend, setup_logging

    cfg = get_config()
    setup_logging({"logging": {**cfg.get("logging", {}), "level": "WARNING"}})
    rt = get_runtime_config()

    model = args.model or rt.get("selected_model") or cfg["backend"]["default_model"]
    if args.model:
        update_runtime_config("selected_model", args.model)

    store = _store(cfg)
    controller = ConversationController.from_config(cfg, store, build_backend(cfg), model=model)

    selected = None if args.new else (args.conversation or rt.get("selected_conversation"))
    if selected:
        await controller.select(selected)

    def on_selected(event, payload):
        update_runtime_config("selected_conversation", payload.get("id"))

    def on_draft(event, payload):
        print(payload["delta"], end="", flush=True)

    controller.events.subscribe(on_selected, "selected")
    controller.events.subscribe(on_draft, "draft_updated")

    print(BANNER)
    print(f"  Model: {model}")
    if controller.selected_id:
        name = store.get(controller.selected_id).name if controller.messages else "(empty)"
        print(f"  Conversation: {name} ({len(controller.messages)} messages)")
    print("  /clear empties the conversation, /new starts another, /quit leaves.\n")

    while True:
        try:
            text = await asyncio.to_thread(input, "  you> ")
        except (EOFError, KeyboardInterrupt):
            break
        text = text.strip()
        if not text:
            continue
        if text in ("/quit", "/exit", "/q"):
            break
        if text == "/clear":
            await controller.clear()
            print("  [conversation cleared]\n")
            continue
        if text == "/new":
            await controller.new_conversation()
            print("  [new conversation]\n")
            continue

        print("  bot> ", end="", flush=True)
        messages = await controller.send(text)
        reply = messages[-1] if messages else None
        if reply is not None and reply.role == "assistant":
            if not reply.latency:
                # Failure replies are not streamed, so print them here
                print(reply.content, end="")
            elif reply.latency.total_ms is not None:
                ttfb = reply.latency.time_to_first_byte_ms
                ttfb_str = f"{ttfb:.0f}ms" if ttfb is not None else "-"
                print(f"\n  (first byte {ttfb_str}, total {reply.latency.total_ms:.0f}ms)", end="")
        print("\n")

    print("  [bye]")


def cmd_chat(args):
    """Chat in the terminal."""
    try:
        asyncio.run(_chat_loop(args))
    except KeyboardInterrupt:
        print("\n  [bye]")


def cmd_list(args):
    """List conversations, newest first."""
    from chatline.config import get_config

    store = _store(get_config())
    entries = store.list_conversations()
    if not entries:
        print("  No conversations yet. Start one with 'chatline chat'.")
        return
    for entry in entries:
        print(f"  {entry.id}  {entry.updated_at[:19].replace('T', ' ')}  {entry.name}")


def cmd_show(args):
    """Print a conversation transcript."""
    from chatline.config import get_config
    from chatline.storage.session_store import ConversationNotFound

    store = _store(get_config())
    try:
        conv = store.get(args.id)
    except ConversationNotFound:
        print(f"  ✗  No conversation {args.id}")
        sys.exit(1)

    print(f"  {conv.name}  ({len(conv.messages)} messages)")
    print("  " + "─" * 56)
    for msg in conv.messages:
        who = "you" if msg.role == "user" else "bot"
        print(f"\n  [{who}] {msg.content}")
        if msg.latency and msg.latency.total_ms is not None:
            ttfb = msg.latency.time_to_first_byte_ms
            ttfb_str = f"{ttfb:.0f}ms" if ttfb is not None else "-"
            print(f"        (first byte {ttfb_str}, total {msg.latency.total_ms:.0f}ms)")


def cmd_rename(args):
    """Rename a conversation."""
    from chatline.config import get_config
    from chatline.storage.session_store import ConversationNotFound

    store = _store(get_config())
    try:
        store.rename(args.id, " ".join(args.name))
    except ConversationNotFound:
        print(f"  ✗  No conversation {args.id}")
        sys.exit(1)
    print("  ✓  Renamed")


def cmd_delete(args):
    """Delete a conversation."""
    from chatline.config import get_config, get_runtime_config, update_runtime_config

    store = _store(get_config())
    store.delete(args.id)
    if get_runtime_config().get("selected_conversation") == args.id:
        update_runtime_config("selected_conversation", None)
    print("  ✓  Deleted")


def cmd_ping(args):
    """Check the Ollama backend."""
    from chatline.config import get_config
    from chatline.main import build_backend

    backend = build_backend(get_config())

    async def _ping():
        return await backend.health_check(), await backend.list_models()

    up, models = asyncio.run(_ping())
    if not up:
        print(f"  ✗  Nothing answering at {backend.url}")
        print("     Make sure Ollama is running: ollama serve")
        sys.exit(1)
    print(f"  ✓  {backend.url} is up")
    print(f"  Models: {', '.join(models) if models else 'none pulled yet'}")


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
        prog="chatline",
        description="chatline — local chat with on-disk history.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start"], "Start the HTTP server", cmd_serve, setup_serve)

    def setup_chat(p):
        p.add_argument("--model", "-m", default=None, help="Model to use (remembered)")
        p.add_argument("--conversation", "-c", default=None, help="Conversation id to continue")
        p.add_argument("--new", action="store_true", help="Start a fresh conversation")

    _add_command(sub, ["chat", "talk"], "Chat in the terminal", cmd_chat, setup_chat)

    _add_command(sub, ["list", "ls"], "List conversations", cmd_list)

    def setup_show(p):
        p.add_argument("id", help="Conversation id")

    _add_command(sub, ["show", "cat"], "Print a conversation", cmd_show, setup_show)

    def setup_rename(p):
        p.add_argument("id", help="Conversation id")
        p.add_argument("name", nargs="+", help="New name")

    _add_command(sub, ["rename", "mv"], "Rename a conversation", cmd_rename, setup_rename)

    def setup_delete(p):
        p.add_argument("id", help="Conversation id")

    _add_command(sub, ["delete", "rm"], "Delete a conversation", cmd_delete, setup_delete)

    _add_command(sub, ["ping", "health"], "Check the Ollama backend", cmd_ping)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        print(BANNER)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
