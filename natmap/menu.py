"""Interactive numbered menu over the core operations."""

from typing import Callable, Optional

from natmap import inventory, reconciler
from natmap.config import NatContext
from natmap.errors import NatMapError

MENU_ITEMS = (
    ('1', 'Add a mapping'),
    ('2', 'Add a range of mappings'),
    ('3', 'Delete a mapping'),
    ('4', 'Delete a range of mappings'),
    ('5', 'Show one mapping'),
    ('6', 'Show all mappings'),
    ('7', 'Persist current rules'),
    ('8', 'Exit'),
)


class CommandLoop:
    """
    Read one menu choice per iteration and dispatch it.

    Errors from a single operation are reported and the loop continues.
    End of input ends the loop like choosing Exit.
    """

    def __init__(
        self,
        ctx: NatContext,
        input_func: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
        lock: Optional[Callable] = None
    ):
        self.ctx = ctx
        self.input = input_func
        self.output = output
        self.lock = lock
        self.handlers = {
            '1': self.add_one,
            '2': self.add_range,
            '3': self.delete_one,
            '4': self.delete_range,
            '5': self.show_one,
            '6': self.show_all,
            '7': self.persist,
        }

    def ask(self, question: str) -> str:
        return self.input(question).replace('\r', '').strip()

    def host_bounds(self) -> str:
        return f"({self.ctx.settings.min_host}-{self.ctx.settings.max_host})"

    def render(self):
        self.output("=" * 8 + " NAT mapping manager " + "=" * 8)
        self.output(f"Backend: {self.ctx.backend.name}")
        self.output(f"Ports per host: {self.ctx.ports_per_host}")
        self.output("-" * 37)
        for key, label in MENU_ITEMS:
            self.output(f"{key}. {label}")
        self.output("=" * 37)

    def run(self) -> int:
        while True:
            self.render()
            try:
                choice = self.ask(f"Choose an option [1-{len(MENU_ITEMS)}]: ")
            except EOFError:
                self.output("")
                return 0

            if choice == '8':
                self.output("Bye.")
                return 0

            handler = self.handlers.get(choice)
            if handler is None:
                self.output(f"Invalid option: [{choice}]")
                continue

            try:
                self.dispatch(handler)
                self.input("Press Enter to return to the menu...")
            except EOFError:
                self.output("")
                return 0

    def dispatch(self, handler: Callable[[], None]):
        try:
            if self.lock is not None:
                with self.lock():
                    handler()
            else:
                handler()
        except NatMapError as e:
            self.output(f"Error: {e}")

    # ------------------------------------------------------------------
    # Menu actions
    # ------------------------------------------------------------------

    def add_one(self):
        host = self.ask(f"Host number {self.host_bounds()}: ")
        result = reconciler.add_host(self.ctx, host)
        a = result.allocation
        self.output(
            f"{self.ctx.settings.host_address(result.host_id)}: ssh {a.ssh_port}, "
            f"ports {a.block_start}-{a.block_end} [{result.status}]"
        )

    def add_range(self):
        start = self.ask(f"First host number {self.host_bounds()}: ")
        end = self.ask(f"Last host number {self.host_bounds()}: ")
        batch = reconciler.add_range(self.ctx, start, end)
        self.output(f"Added {sum(r.added > 0 for r in batch.results)} host(s), {len(batch.errors)} error(s)")

    def delete_one(self):
        host = self.ask(f"Host number to delete {self.host_bounds()}: ")
        result = reconciler.delete_host(self.ctx, host)
        self.output(f"{self.ctx.settings.host_address(result.host_id)}: {result.status}")

    def delete_range(self):
        start = self.ask(f"First host number {self.host_bounds()}: ")
        end = self.ask(f"Last host number {self.host_bounds()}: ")
        batch = reconciler.delete_range(self.ctx, start, end)
        removed = sum(r.status == reconciler.REMOVED for r in batch.results)
        self.output(f"Removed {removed} host(s), {len(batch.errors)} error(s)")

    def show_one(self):
        host = self.ask(f"Host number to show {self.host_bounds()}: ")
        mapping = inventory.inspect_host(self.ctx, host)
        if mapping is None:
            self.output(f"No NAT rules found for {self.ctx.settings.host_address(int(host))}")
            return
        self.output(inventory.format_mapping(mapping))

    def show_all(self):
        self.output(inventory.format_mappings(inventory.list_mappings(self.ctx), self.ctx))

    def persist(self):
        reconciler.persist(self.ctx)
        self.output(f"Rules saved to {self.ctx.settings.rules_file}")
