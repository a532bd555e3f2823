"""Turn chat attachments into file handles for the inference payload."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional

from .errors import AttachmentResolutionError

logger = logging.getLogger(__name__)

# Preference order for the URL an image attachment is fetched from.
IMAGE_URL_FIELDS = ("image_url", "asset_url", "thumb_url", "og_scrape_url")

FileResolver = Callable[[str], Any]


def default_file_resolver(url: str) -> Any:
    """Wrap a public URL the way ``gradio_client`` expects file inputs."""
    from gradio_client import handle_file

    return handle_file(url)


def image_urls(attachments: Optional[Iterable[Mapping[str, Any]]]) -> List[str]:
    """Return the preferred URL of every image attachment, in order."""
    urls: List[str] = []
    for attachment in attachments or []:
        if not isinstance(attachment, Mapping) or attachment.get("type") != "image":
            continue
        url = first_url(attachment)
        if url:
            urls.append(url)
    return urls


def first_url(attachment: Mapping[str, Any]) -> Optional[str]:
    for key in IMAGE_URL_FIELDS:
        value = attachment.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resolve_files(
    attachments: Optional[Iterable[Mapping[str, Any]]],
    resolver: FileResolver = default_file_resolver,
) -> List[Any]:
    """Resolve image attachments into file handles.

    Raises :class:`AttachmentResolutionError` naming the offending URL when
    the resolver fails.
    """
    handles: List[Any] = []
    for url in image_urls(attachments):
        try:
            handles.append(resolver(url))
        except Exception as exc:
            raise AttachmentResolutionError(f"Could not resolve attachment {url}: {exc}") from exc
    if handles:
        logger.debug("Resolved %d image attachment(s)", len(handles))
    return handles
