"""
Structured result of a remote command execution.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

FAILURE_EXIT_CODE = -1  # Transport failure, no remote exit status


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of a single command invocation.

    Equality and hashing cover command, exit code, output and error only,
    so two logically identical runs compare equal regardless of timing.
    """

    command: str
    exit_code: int
    output: str
    error: str = ""
    execution_time: float = field(default=0.0, compare=False)
    start_time: datetime = field(default_factory=datetime.now, compare=False)
    end_time: datetime = field(default_factory=datetime.now, compare=False)

    @classmethod
    def create(
        cls,
        command: str,
        exit_code: int,
        output: str,
        error: str = "",
        execution_time: float = 0.0,
    ) -> "CommandResult":
        """Build a result ending now and starting execution_time seconds earlier."""
        end = datetime.now()
        start = end - timedelta(seconds=execution_time)
        return cls(command, exit_code, output, error, execution_time, start, end)

    @classmethod
    def from_times(
        cls,
        command: str,
        exit_code: int,
        output: str,
        error: str,
        start_time: datetime,
        end_time: datetime,
    ) -> "CommandResult":
        execution_time = (end_time - start_time).total_seconds()
        return cls(command, exit_code, output, error, execution_time, start_time, end_time)

    @classmethod
    def success(cls, command: str, output: str = "", execution_time: float = 0.0) -> "CommandResult":
        return cls.create(command, 0, output, "", execution_time)

    @classmethod
    def failure(
        cls,
        command: str,
        exit_code: int = 1,
        output: str = "",
        error: str = "",
        execution_time: float = 0.0,
    ) -> "CommandResult":
        return cls.create(command, exit_code, output, error, execution_time)

    # -- Status ---------------------------------------------------------------

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0

    @property
    def has_output(self) -> bool:
        return bool(self.output)

    @property
    def has_error(self) -> bool:
        return bool(self.error) or self.exit_code != 0

    @property
    def status_description(self) -> str:
        if self.is_success:
            return "success"
        return f"failed (exit code: {self.exit_code})"

    @property
    def summary(self) -> str:
        if self.is_success:
            return f"{self.command} - succeeded ({self.execution_time:.2f}s)"
        return (
            f"{self.command} - failed ({self.execution_time:.2f}s, "
            f"exit code: {self.exit_code})"
        )

    # -- Output helpers -------------------------------------------------------

    @property
    def output_line_count(self) -> int:
        return len(self.output.splitlines())

    @property
    def error_line_count(self) -> int:
        return len(self.error.splitlines())

    @property
    def output_lines(self) -> list[str]:
        return [line for line in self.output.splitlines() if line]

    @property
    def error_lines(self) -> list[str]:
        return [line for line in self.error.splitlines() if line]

    @property
    def first_output_line(self) -> str | None:
        lines = self.output_lines
        return lines[0] if lines else None

    @property
    def last_output_line(self) -> str | None:
        lines = self.output_lines
        return lines[-1] if lines else None

    def contains_in_output(self, text: str) -> bool:
        return text.casefold() in self.output.casefold()

    def contains_in_error(self, text: str) -> bool:
        return text.casefold() in self.error.casefold()

    def match_output(self, pattern: str) -> list[str]:
        """Return every regex match in the output; [] if the pattern is invalid."""
        try:
            regex = re.compile(pattern)
        except re.error:
            return []
        return [m.group(0) for m in regex.finditer(self.output)]

    # -- Serialization --------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "execution_time": self.execution_time,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "CommandResult | None":
        """
        Restore a result from to_json() output.

        Returns:
            The CommandResult, or None if the text is malformed.
        """
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                return None
            command = data["command"]
            exit_code = data["exit_code"]
            output = data["output"]
            error = data["error"]
            if not all(isinstance(v, str) for v in (command, output, error)):
                return None
            if not isinstance(exit_code, int) or isinstance(exit_code, bool):
                return None
            return cls(
                command=command,
                exit_code=exit_code,
                output=output,
                error=error,
                execution_time=float(data["execution_time"]),
                start_time=datetime.fromisoformat(data["start_time"]),
                end_time=datetime.fromisoformat(data["end_time"]),
            )
        except (ValueError, TypeError, KeyError, OverflowError, RecursionError):
            return None

    def __str__(self) -> str:
        text = (
            "Command result:\n"
            f"- Command: {self.command}\n"
            f"- Status: {self.status_description}\n"
            f"- Execution time: {self.execution_time:.3f}s\n"
            f"- Started: {self.start_time.isoformat(timespec='seconds')}\n"
            f"- Finished: {self.end_time.isoformat(timespec='seconds')}"
        )
        if self.has_output:
            text += f"\n- Output ({self.output_line_count} lines):\n{self.output}"
        if self.has_error:
            text += f"\n- Error output ({self.error_line_count} lines):\n{self.error}"
        return text
