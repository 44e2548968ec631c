from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

AUTOGEN_MARKER = "lines above this were auto-generated by imagesmith"


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str = "rw"
    dump: Optional[int] = None
    passno: Optional[int] = None

    def render(self) -> str:
        fields = [self.spec, self.mountpoint, self.fstype, self.options]
        if self.dump is not None or self.passno is not None:
            fields += [str(self.dump or 0), str(self.passno or 0)]
        return " ".join(fields)


Line = Union[FstabEntry, str]


def render_fstab(entries: Sequence[Line]) -> str:
    out = [e.render() if isinstance(e, FstabEntry) else e for e in entries]
    return "\n".join(out) + "\n"


class Fstab:
    """Mount table under construction: generated entries, then verbatim text."""

    def __init__(self, entries: Optional[Sequence[Line]] = None) -> None:
        self._lines: List[Line] = list(entries or [])

    def add_line(self, spec: str, mountpoint: str, fstype: str, options: str = "rw") -> "Fstab":
        self._lines.append(FstabEntry(spec=spec, mountpoint=mountpoint, fstype=fstype, options=options))
        return self

    def add_comment(self, text: str) -> "Fstab":
        self._lines.append(f"# {text}")
        return self

    def add_empty_line(self) -> "Fstab":
        self._lines.append("")
        return self

    def append_text(self, text: str) -> "Fstab":
        self._lines.extend(text.rstrip("\n").split("\n"))
        return self

    def render(self) -> str:
        return render_fstab(self._lines)

    def __str__(self) -> str:
        return self.render()

    def merge_existing(self, path: Path) -> "Fstab":
        """Put the marker comment and an existing fstab's content below the generated lines."""

        if path.exists():
            existing = path.read_text(encoding="utf-8")
            self.add_empty_line()
            self.add_comment(AUTOGEN_MARKER)
            self.add_empty_line()
            if existing.strip():
                self.append_text(existing)
        return self
