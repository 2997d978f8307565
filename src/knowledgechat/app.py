# /knowledgechat/app.py
"""
Command-line client for the knowledge chat workspace.
Handles the menu loop and user prompts; all state changes go through
`KnowledgeWorkspace`.
"""
import os
import sys
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .analysis import format_plan_line
from .blob_store import LocalBlobStore
from .config import API_MODEL_NAME, LOCAL_MODEL_NAME, USE_API_LLM, console
from .document_store import DocumentDatabase
from .errors import KnowledgeChatError
from .llm import initialize_llm
from .models import MemberProfile, TeamScope
from .observability import get_logger
from .organization import create_team, invite_member, load_profile, signup_member
from .workspace import ActionResult, KnowledgeWorkspace, UploadStatus

logger = get_logger(__name__)

_MIME_BY_SUFFIX = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
}


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    model = API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME
    console.print(Panel(
        "[bold magenta]KnowledgeChat - Team Knowledge Assistant[/bold magenta]",
        subtitle=f"[cyan]Model: {model}[/cyan]",
        expand=False
    ))


def _print_result(result: ActionResult):
    style = "green" if result.ok else "bold red"
    if result.message:
        console.print(f"[{style}]{result.message}[/{style}]")


def _print_upload_status(status: UploadStatus | None):
    if status is not None:
        console.print(f"[dim]{status.file_name}: {status.progress}%[/dim]")


def show_sources(workspace: KnowledgeWorkspace):
    sources = workspace.visible_sources
    if not sources:
        console.print("[yellow]ナレッジがありません。[/yellow]")
        return
    table = Table(title="ナレッジ", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Pricing")
    table.add_column("Pinned")
    for idx, source in enumerate(sources, start=1):
        pricing = "\n".join(format_plan_line(plan) for plan in source.pricing_plans) or "-"
        kind = source.source_type or "pdf"
        if source.is_inherited:
            kind += " (inherited)"
        pinned = "*" if source.id == workspace.pinned_source_id else ""
        table.add_row(str(idx), source.name, kind, pricing, pinned)
    console.print(table)


def show_messages(workspace: KnowledgeWorkspace, last: int = 10):
    console.print(f"\n[bold]{workspace.chat_title()}[/bold]")
    for message in workspace.messages[-last:]:
        if message.sender == "user":
            console.print(f"[bold cyan]You:[/bold cyan] {message.text}")
        else:
            console.print(Panel(Markdown(message.text), border_style="blue"))


def _choose_source(workspace: KnowledgeWorkspace, prompt: str):
    sources = workspace.visible_sources
    if not sources:
        console.print("[yellow]ナレッジがありません。[/yellow]")
        return None
    show_sources(workspace)
    choice = Prompt.ask(prompt, choices=[str(i) for i in range(1, len(sources) + 1)])
    return sources[int(choice) - 1]


# --- Menu Handlers ---

def handle_file_upload(workspace: KnowledgeWorkspace):
    file_path = Path(Prompt.ask("Enter the full path to your PDF / txt / md / csv file").strip().strip('"'))
    if not file_path.is_file():
        console.print(f"[bold red]File not found: {file_path}[/bold red]")
        return
    content_type = _MIME_BY_SUFFIX.get(file_path.suffix.lower(), "")
    _print_result(workspace.upload_file(file_path.name, file_path.read_bytes(), content_type))


def handle_text_paste(workspace: KnowledgeWorkspace):
    title = Prompt.ask("Title", default="テキストナレッジ")
    console.print("[dim]Paste the text. Finish with an empty line.[/dim]")
    lines = []
    while True:
        line = input()
        if not line:
            break
        lines.append(line)
    _print_result(workspace.add_text(title, "\n".join(lines)))


def handle_url(workspace: KnowledgeWorkspace):
    url = Prompt.ask("URL")
    _print_result(workspace.add_url(url))


def handle_qa_session(workspace: KnowledgeWorkspace):
    show_messages(workspace)
    while True:
        question = Prompt.ask("[bold cyan]Ask a question (or type 'back' to go back to the menu)[/bold cyan]")
        if question.strip().lower() == "back":
            return
        with console.status("[cyan]Thinking...[/cyan]"):
            result = workspace.ask(question)
        if result.ok:
            console.print(Panel(Markdown(result.message), title="Answer", border_style="blue"))
        else:
            _print_result(result)


def handle_new_chat(workspace: KnowledgeWorkspace):
    inherit: list[str] = []
    if isinstance(workspace.selection.scope, TeamScope) and workspace.personal_sources:
        console.print("[bold]Personal knowledge available to copy into the team chat:[/bold]")
        for idx, source in enumerate(workspace.personal_sources, start=1):
            console.print(f"  {idx}. {source.name}")
        picked = Prompt.ask("Numbers to inherit (comma separated, blank for none)", default="")
        for token in picked.split(","):
            token = token.strip()
            if token.isdigit() and 1 <= int(token) <= len(workspace.personal_sources):
                inherit.append(workspace.personal_sources[int(token) - 1].id)
    _print_result(workspace.new_chat(inherit))


def handle_switch_scope(workspace: KnowledgeWorkspace):
    console.print("0. 個人チャット")
    for idx, team in enumerate(workspace.teams, start=1):
        console.print(f"{idx}. {team.name}")
    choice = Prompt.ask("Choose a scope", choices=[str(i) for i in range(0, len(workspace.teams) + 1)], default="0")
    if choice == "0":
        _print_result(workspace.select_personal())
    else:
        _print_result(workspace.select_team(workspace.teams[int(choice) - 1].id))

    threads = workspace.thread_list
    if len(threads) > 1 and Confirm.ask("Open an older chat?", default=False):
        for idx, thread in enumerate(threads, start=1):
            console.print(f"{idx}. {thread.label()}")
        picked = Prompt.ask("Chat", choices=[str(i) for i in range(1, len(threads) + 1)])
        _print_result(workspace.select_thread(threads[int(picked) - 1].id))


def handle_pin(workspace: KnowledgeWorkspace):
    if workspace.pinned_source_id and Confirm.ask("Clear the pinned knowledge?", default=False):
        _print_result(workspace.pin_source(None))
        return
    source = _choose_source(workspace, "Pin which knowledge")
    if source is not None:
        _print_result(workspace.pin_source(source.id))


def handle_delete(workspace: KnowledgeWorkspace):
    source = _choose_source(workspace, "Delete which knowledge")
    if source is None:
        return
    confirm = lambda s: Confirm.ask(f"「{s.name}」を削除しますか？", default=False)  # noqa: E731
    _print_result(workspace.delete_source(source.id, confirm))


def handle_team_admin(db: DocumentDatabase, profile: MemberProfile):
    choice = Prompt.ask("1. Create team  2. Invite member", choices=["1", "2"])
    try:
        if choice == "1":
            name = Prompt.ask("Team name")
            members = Prompt.ask("Member uids (comma separated)", default="")
            team = create_team(db, profile, name, [uid.strip() for uid in members.split(",") if uid.strip()])
            console.print(f"[green]Created team {team.name}.[/green]")
        else:
            email = Prompt.ask("Email")
            invite_member(db, profile, email)
            console.print(f"[green]Invited {email.strip().lower()}.[/green]")
    except KnowledgeChatError as exc:
        console.print(f"[bold red]{exc.message}[/bold red]")


def resolve_profile(db: DocumentDatabase, uid: str) -> MemberProfile | None:
    profile = load_profile(db, uid)
    if profile is not None:
        return profile
    if not Confirm.ask(f"No profile for {uid}. Sign up now?", default=True):
        return None
    try:
        return signup_member(
            db,
            uid,
            Prompt.ask("Email"),
            Prompt.ask("Display name", default=""),
            Prompt.ask("Company name"),
        )
    except KnowledgeChatError as exc:
        console.print(f"[bold red]{exc.message}[/bold red]")
        return None


def main():
    """Main application loop."""
    display_welcome_banner()
    uid = os.getenv("KNOWLEDGECHAT_UID") or Prompt.ask("User id")
    db = DocumentDatabase()
    profile = resolve_profile(db, uid)
    workspace = KnowledgeWorkspace(
        db,
        LocalBlobStore(),
        uid,
        llm=initialize_llm(),
        profile=profile,
        on_upload_status=_print_upload_status,
    )
    workspace.start()

    handlers = {
        "1": lambda: handle_file_upload(workspace),
        "2": lambda: handle_text_paste(workspace),
        "3": lambda: handle_url(workspace),
        "4": lambda: handle_qa_session(workspace),
        "5": lambda: show_sources(workspace),
        "6": lambda: handle_pin(workspace),
        "7": lambda: handle_delete(workspace),
        "8": lambda: handle_new_chat(workspace),
        "9": lambda: handle_switch_scope(workspace),
    }

    try:
        while True:
            try:
                console.print(f"\n[bold]Main Menu[/bold] [dim]({workspace.chat_title()})[/dim]")
                console.print("[green]1. Upload File   2. Paste Text   3. Add URL[/green]")
                console.print("[blue]4. Ask Questions   5. List Knowledge   6. Pin Knowledge   7. Delete Knowledge[/blue]")
                console.print("[cyan]8. New Chat   9. Switch Scope / Chat   t. Teams[/cyan]")
                console.print("[red]0. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=[*handlers, "t", "0"])
                if choice == "0":
                    break
                if choice == "t":
                    if profile is None or not profile.company_id:
                        console.print("[yellow]Team features need a company profile.[/yellow]")
                    else:
                        handle_team_admin(db, profile)
                    continue
                handlers[choice]()
            except KeyboardInterrupt:
                break
    finally:
        workspace.close()
        db.close()

    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
