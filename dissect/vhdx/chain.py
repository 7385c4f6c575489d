from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from dissect.vhdx.c_vhdx import ABSOLUTE_WIN32_PATH_KEY, RELATIVE_PATH_KEY, VOLUME_PATH_KEY
from dissect.vhdx.exceptions import Error, ParentCycleDetected, ParentNotFound

if TYPE_CHECKING:
    from dissect.vhdx.metadata import ParentLocator
    from dissect.vhdx.vhdx import VHDX

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


def _to_path(value: str) -> Path:
    return Path(value.replace("\\", "/"))


def parent_candidates(locator: ParentLocator, directory: Optional[Path]) -> list[Path]:
    """Build the list of paths the parent might be found at, in order of preference.

    The relative path is tried against the directory of the child first, then as given. The volume path and
    absolute path are tried last, as they are only valid on the system that created the disk.

    Args:
        locator: The parent locator of the child.
        directory: The directory of the child, if known.
    """
    candidates = []

    relative_path = locator.entries.get(RELATIVE_PATH_KEY)
    if relative_path:
        if directory is not None:
            candidates.append(directory.joinpath(_to_path(relative_path)))
        candidates.append(_to_path(relative_path))

    for key in (VOLUME_PATH_KEY, ABSOLUTE_WIN32_PATH_KEY):
        value = locator.entries.get(key)
        if value:
            candidates.append(_to_path(value))

    result = []
    for candidate in candidates:
        if candidate not in result:
            result.append(candidate)
    return result


def resolve_parent(image: VHDX, visited: set[Path]) -> tuple[VHDX, bool]:
    """Locate and decode the parent of a differencing disk.

    The first candidate path that exists and decodes wins. The parent's own chain is followed as well, with the
    set of visited paths extended by the parent.

    Args:
        image: The decoded child image.
        visited: The canonical paths of every image in the chain so far, including the child.

    Returns:
        A tuple of the decoded parent and whether its data write GUID matches the parent linkage of the child.

    Raises:
        ParentCycleDetected: If a candidate resolves to an image that is already part of the chain.
        ParentNotFound: If no candidate could be opened and decoded.
    """
    locator = image.parent_locator
    if locator is None:
        raise ParentNotFound("Image has no parent locator")

    if not locator.is_vhdx:
        raise ParentNotFound(f"Unsupported parent locator type: {locator.type}")

    directory = image.path.parent if image.path is not None else None

    errors = []
    for candidate in parent_candidates(locator, directory):
        if not candidate.is_file():
            errors.append(f"{candidate}: does not exist")
            continue

        canonical = candidate.resolve()
        if canonical in visited:
            raise ParentCycleDetected(f"Parent {canonical} of {image.path} is already part of the chain")

        try:
            parent = type(image)(canonical, follow_parent=True, visited=visited | {canonical})
        except (Error, OSError) as e:
            log.debug("Failed to open parent candidate %s", candidate, exc_info=e)
            errors.append(f"{candidate}: {e}")
            continue

        log.debug("Located parent of %s at %s", image.path, canonical)
        return parent, _check_linkage(locator, parent)

    raise ParentNotFound(
        f"Failed to locate parent of {image.path} with locator {locator.entries}: " + "; ".join(errors)
    )


def _check_linkage(locator: ParentLocator, parent: VHDX) -> bool:
    linkages = [guid for guid in (locator.parent_linkage, locator.parent_linkage2) if guid is not None]
    if parent.data_write_guid in linkages:
        return True

    log.warning(
        "Parent %s has data write GUID %s, but the parent locator expects %s",
        parent.path,
        parent.data_write_guid,
        " or ".join(map(str, linkages)) or "nothing",
    )
    return False
