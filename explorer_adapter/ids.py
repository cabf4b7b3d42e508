"""Construction and parsing of test node identifiers.

An id is the absolute path of the test file followed by the declared names
leading to the node, joined with ``::``. Characters that could collide with
the delimiter or the duplicate marker are percent-escaped in every component,
the file path included.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote

DELIMITER = "::"
ROOT_ID = "root"

_DUPLICATE_SUFFIX = re.compile(r"#\d+$")


def escape_name(name: str) -> str:
    """Escape a declared name for use as an id component."""
    return name.replace("%", "%25").replace(":", "%3A").replace("#", "%23")


def unescape_name(component: str) -> str:
    """Reverse ``escape_name``, ignoring any duplicate marker."""
    return unquote(_DUPLICATE_SUFFIX.sub("", component))


def file_id(file: Path) -> str:
    return escape_name(str(file))


def child_id(parent_id: str, name: str) -> str:
    return f"{parent_id}{DELIMITER}{escape_name(name)}"


def parse_test_id(test_id: str) -> tuple[Path, tuple[str, ...]]:
    """Split an id into its file path and declared name path.

    Raises:
        ValueError: If the id is the root id.

    """
    if test_id == ROOT_ID:
        raise ValueError("The root suite does not belong to a file")
    file_part, *names = test_id.split(DELIMITER)
    return Path(unescape_name(file_part)), tuple(unescape_name(name) for name in names)


@dataclass
class IdAllocator:
    """Hands out ids, disambiguating repeats with a ``#n`` suffix."""

    seen: set[str] = field(default_factory=set)

    def allocate(self, candidate: str) -> str:
        allocated = candidate
        counter = 1
        while allocated in self.seen:
            counter += 1
            allocated = f"{candidate}#{counter}"
        self.seen.add(allocated)
        return allocated
