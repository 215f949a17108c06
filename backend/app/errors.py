"""
Typed errors shared by services and routers.

Each class carries the HTTP status the web layer answers with. Git transport
front ends collapse NotFoundError and AccessDeniedError into one generic
message so private repositories are indistinguishable from missing ones.
"""


class GitForgeError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


# -----------------------------------------------------------------------------
# NotFound
# -----------------------------------------------------------------------------

class NotFoundError(GitForgeError):
    status_code = 404


class UserNotFound(NotFoundError):
    pass


class RepoNotFound(NotFoundError):
    pass


class UpdateTaskNotFound(NotFoundError):
    pass


class LFSObjectNotFound(NotFoundError):
    pass


class WebhookNotFound(NotFoundError):
    pass


class HookTaskNotFound(NotFoundError):
    pass


class PullRequestNotFound(NotFoundError):
    pass


class MirrorNotFound(NotFoundError):
    pass


class KeyNotFound(NotFoundError):
    pass


# -----------------------------------------------------------------------------
# Access
# -----------------------------------------------------------------------------

class AccessDeniedError(GitForgeError):
    status_code = 403


class AuthenticationError(GitForgeError):
    """Credentials were missing or did not validate."""
    status_code = 401


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

class InvalidInputError(GitForgeError):
    status_code = 422


class InvalidOidError(InvalidInputError):
    pass


class InvalidRefError(InvalidInputError):
    pass


class HashMismatchError(InvalidInputError):
    pass


class SizeMismatchError(InvalidInputError):
    pass


class ForbiddenURIError(InvalidInputError):
    pass


class RepoAlreadyExists(InvalidInputError):
    status_code = 409


# -----------------------------------------------------------------------------
# Transient / process
# -----------------------------------------------------------------------------

class TransientError(GitForgeError):
    status_code = 503


class ProcessTimeoutError(TransientError):
    pass


class ProcessError(GitForgeError):
    """A child process exited non-zero."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}: {self.stderr.strip()}"
        return self.message


class DataIntegrityError(GitForgeError):
    """On-disk state and metadata disagree."""
    pass


# -----------------------------------------------------------------------------
# Pull requests
# -----------------------------------------------------------------------------

class PullRequestNotMergeableError(GitForgeError):
    status_code = 405


class PullRequestAlreadyMergedError(GitForgeError):
    status_code = 405


# -----------------------------------------------------------------------------
# Diff
# -----------------------------------------------------------------------------

class ParseError(GitForgeError):
    """Reading the patch stream failed. Malformed patch text never raises this."""
    pass
