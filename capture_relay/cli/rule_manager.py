"""
Rule and Store Management CLI
Inspect rules and stored traffic without starting the server
"""

from typing import Optional

import structlog
from rich.console import Console
from rich.table import Table

from capture_relay.core.config import ApplicationConfig
from capture_relay.core.errors import StoreError
from capture_relay.core.store import COLLECTIONS, JsonFileStore
from capture_relay.engine.cleanup import CleanupService
from capture_relay.engine.rule_store import RuleStore

logger = structlog.get_logger()
console = Console()


def _enabled(flag: bool) -> str:
    return "[green]enabled[/green]" if flag else "[dim]disabled[/dim]"


def _modifications(rule) -> str:
    parts = [name for name, value in (("headers", rule.modify_headers), ("body", rule.modify_body)) if value is not None]
    return ", ".join(parts) or "-"


class RuleManager:
    """
    CLI interface over the JSON file store
    """

    def __init__(self, config: Optional[ApplicationConfig] = None):
        self.config = config or ApplicationConfig()
        self.store = JsonFileStore(self.config.storage.data_directory)
        self.rules = RuleStore(self.store)

    async def list_rules(self) -> bool:
        """Print every rule collection as a table"""
        try:
            await self.rules.load()
        except StoreError as e:
            console.print(f"[red]Failed to load rules: {e}[/red]")
            return False

        console.print("\n[bold blue]Capture Rules[/bold blue]")
        if not self.rules.capture_rules:
            console.print("[yellow]No capture rules, every request is captured[/yellow]")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="dim", width=34)
            table.add_column("Host", style="cyan")
            table.add_column("Methods")
            table.add_column("Status", width=10)
            for rule in self.rules.capture_rules:
                table.add_row(rule.id, rule.host, ", ".join(rule.methods) or "*", _enabled(rule.enabled))
            console.print(table)

        for title, rules, detail in (
            ("Response Rules", self.rules.response_rules, lambda r: str(r.response_status or "-")),
            ("Intercept Rules", self.rules.intercept_rules, _modifications),
        ):
            console.print(f"\n[bold blue]{title}[/bold blue]")
            if not rules:
                console.print("[yellow]None configured[/yellow]")
                continue
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="dim", width=34)
            table.add_column("Name")
            table.add_column("Host", style="cyan")
            table.add_column("Method", width=8)
            table.add_column("Path Regex")
            table.add_column("Detail")
            table.add_column("Status", width=10)
            for rule in rules:
                table.add_row(
                    rule.id, rule.name, rule.host, rule.method, rule.path_regex or "*", detail(rule), _enabled(rule.enabled)
                )
            console.print(table)

        return True

    def store_status(self) -> bool:
        """Print the backing file of every collection"""
        status = self.store.describe()
        console.print(f"\n[bold blue]Store directory:[/bold blue] {status['db_directory']}\n")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Collection", style="cyan", width=24)
        table.add_column("Exists", width=8)
        table.add_column("Size (bytes)", justify="right")
        table.add_column("Path", style="dim")
        for name in COLLECTIONS:
            info = status["files"][name]
            table.add_row(name, "yes" if info["exists"] else "no", str(info["size"]), info["path"])
        console.print(table)
        return True

    async def clear_data(self) -> bool:
        """Empty every traffic collection after confirmation"""
        console.print("\n[yellow]Delete all captured requests, responses and intercepted requests?[/yellow]")
        console.print("[dim]Rules are kept.[/dim]")
        confirm = input("Type 'yes' to confirm: ")
        if confirm.lower() != "yes":
            console.print("[dim]Cancelled[/dim]")
            return False

        try:
            counts = await CleanupService(self.store).clear_all()
        except StoreError as e:
            console.print(f"[red]Failed to clear data: {e}[/red]")
            return False

        for name, count in counts.items():
            console.print(f"  {name}: [green]{count} removed[/green]")
        return True


async def list_rules_command():
    success = await RuleManager().list_rules()
    return 0 if success else 1


def store_status_command():
    success = RuleManager().store_status()
    return 0 if success else 1


async def clear_data_command():
    success = await RuleManager().clear_data()
    return 0 if success else 1
