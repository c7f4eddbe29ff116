from __future__ import annotations

import re

from .errors import GatewayError, ImageError
from .logger import logger
from .podman import ImageInfo, PodmanClient

ARCHIVE_PREFIX_RE = re.compile(r"^(?:docker|oci)-archive:")


def realize_image(client: PodmanClient, reference: str, pull_policy: str) -> ImageInfo:
    """Make `reference` available in podman and return its image info.

    `docker-archive:PATH` and `oci-archive:PATH` references are loaded from
    the local file; anything else is pulled with `pull_policy`.
    """
    if ARCHIVE_PREFIX_RE.match(reference):
        path = ARCHIVE_PREFIX_RE.sub("", reference, count=1)
        try:
            with open(path, "rb") as f:
                info = client.load_image(f)
        except OSError as e:
            raise ImageError(reference, f"could not open archive: {e}") from e
        except GatewayError as e:
            raise ImageError(reference, e) from e
        logger.info("Loaded image archive", image=reference, id=info.id)
        return info

    try:
        info = client.pull_image(reference, policy=pull_policy)
    except GatewayError as e:
        raise ImageError(reference, e) from e
    logger.debug("Pulled image", image=reference, policy=pull_policy, id=info.id)
    return info
