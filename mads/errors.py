from __future__ import annotations


class MadsError(Exception):
    pass


class ParseError(MadsError):
    """A pod definition could not be read, decoded or validated."""

    def __init__(self, source: str, cause: Exception | str):
        self.source = source
        self.cause = cause
        super().__init__(f"could not parse '{source}': {cause}")


class InvalidPodError(MadsError, ValueError):
    pass


class ForeignPodError(MadsError):
    """The target pod exists but carries no mads ownership label."""

    def __init__(self, pod: str):
        self.pod = pod
        super().__init__(f"pod '{pod}' is not managed by mads, refusing to touch it")


class GatewayError(MadsError):
    """A Podman or Consul call failed.

    `op` names the operation ("create pod", "deregister service", ...),
    `target` the object it was aimed at and `cause` the underlying reason.
    """

    def __init__(self, op: str, target: str, cause: Exception | str, status: int | None = None):
        self.op = op
        self.target = target
        self.cause = cause
        self.status = status
        super().__init__(f"could not {op} '{target}': {cause}")


class NotFoundError(GatewayError):
    pass


class AlreadyStartedError(GatewayError):
    pass


class ImageError(MadsError):
    def __init__(self, reference: str, cause: Exception | str):
        self.reference = reference
        self.cause = cause
        super().__init__(f"could not realize image '{reference}': {cause}")


class ContainerCreateError(MadsError):
    """Creating a container failed after its pod was created.

    The pod has already been deleted (best effort) when this is raised.
    `cleanup_error` holds the failure of that delete, if any; it never
    replaces `cause`.
    """

    def __init__(self, pod: str, container: str, cause: Exception, cleanup_error: Exception | None = None):
        self.pod = pod
        self.container = container
        self.cause = cause
        self.cleanup_error = cleanup_error
        msg = f"could not create container '{container}' in pod '{pod}': {cause}"
        if cleanup_error is not None:
            msg += f" (cleanup of pod also failed: {cleanup_error})"
        super().__init__(msg)


class WatchError(MadsError):
    pass


class CancelledError(MadsError):
    pass
