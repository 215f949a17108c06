from enum import IntEnum


class AccessMode(IntEnum):
    """Authorization level a principal holds on a repository. Higher wins."""
    NONE = 0
    READ = 1
    WRITE = 2
    ADMIN = 3
    OWNER = 4

    def __str__(self) -> str:
        return self.name.lower()
