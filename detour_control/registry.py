"""
CommandRegistry - Explicit command registration for the detour processor

Bounded Context: Command registration and validation
Responsibilities:
  - Register commands with handlers
  - Validate command existence before execution
  - Provide introspection (available_commands, get_help)

Command names are normalized (trimmed, lower-case, "-" → "_") so
"list-detours" from a shell and "list_detours" from JSON are the same
command.

Threading: Thread-safe (lock for registration, snapshot reads)
"""

import threading
from typing import Any, Callable, Dict, Optional, Set


class CommandNotAvailableError(Exception):
    """Raised when attempting to execute an unregistered command"""
    pass


def normalize_command(command: Optional[str]) -> str:
    """'List-Detours ' -> 'list_detours'."""
    return (command or "").strip().lower().replace("-", "_")


class CommandRegistry:
    """
    Registry for control commands with explicit registration.

    Every handler receives the full command payload (dict).

    Example:
        registry = CommandRegistry()
        registry.register('pause', service.handle_pause, "Pause polling")

        try:
            registry.execute('pause', {'command': 'pause'})
        except CommandNotAvailableError as e:
            print(f"Command not available: {e}")
    """

    def __init__(self):
        self._commands: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self._descriptions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, command: str, handler: Callable[[Dict[str, Any]], Any], description: str) -> None:
        """
        Register a command with its handler function.

        Raises:
            ValueError: If the name is empty or already registered
        """
        name = normalize_command(command)
        if not name:
            raise ValueError("Command name cannot be empty")

        with self._lock:
            if name in self._commands:
                raise ValueError(f"Command '{name}' already registered")

            self._commands[name] = handler
            self._descriptions[name] = description

    def execute(self, command: str, command_data: Optional[Dict[str, Any]] = None) -> Any:
        """
        Execute a registered command.

        Args:
            command: Command name to execute
            command_data: Command payload (default: empty dict)

        Returns:
            Whatever the handler returns

        Raises:
            CommandNotAvailableError: If command not registered
        """
        name = normalize_command(command)
        with self._lock:
            handler = self._commands.get(name)

        if handler is None:
            raise CommandNotAvailableError(
                f"Command '{name}' not available. "
                f"Available commands: {', '.join(sorted(self.available_commands))}"
            )

        return handler(command_data if command_data is not None else {})

    def is_available(self, command: str) -> bool:
        with self._lock:
            return normalize_command(command) in self._commands

    @property
    def available_commands(self) -> Set[str]:
        """Snapshot of registered command names."""
        with self._lock:
            return set(self._commands)

    def get_help(self) -> Dict[str, str]:
        """Snapshot of command → description."""
        with self._lock:
            return dict(self._descriptions)

    def count(self) -> int:
        with self._lock:
            return len(self._commands)
