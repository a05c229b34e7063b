"""Image reference value type.

An image reference is the immutable identity of a deployable build:
registry host, repository and a content-derived tag (usually the commit
SHA). The mutable ``latest`` alias may point at the same build but is
never deployed, so that what passed verification is exactly what runs.
"""

from __future__ import annotations

from dataclasses import dataclass


MUTABLE_TAGS = frozenset({"latest"})


@dataclass(frozen=True)
class ImageReference:
    """Canonical identity of a deployable artifact."""

    registry: str
    repository: str
    tag: str

    def __post_init__(self) -> None:
        if not self.registry:
            msg = "Image reference requires a registry host"
            raise ValueError(msg)
        if not self.repository:
            msg = "Image reference requires a repository"
            raise ValueError(msg)
        if not self.tag:
            msg = "Image reference requires a tag"
            raise ValueError(msg)

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @property
    def is_mutable_alias(self) -> bool:
        """Whether the tag is a moving alias rather than a content-derived tag."""
        return self.tag in MUTABLE_TAGS

    def same_build(self, other: ImageReference) -> bool:
        """Two references denote the same build only if their tags match exactly."""
        return self.tag == other.tag

    def with_tag(self, tag: str) -> ImageReference:
        """Return the same repository under a different tag."""
        return ImageReference(registry=self.registry, repository=self.repository, tag=tag)

    @classmethod
    def parse(cls, text: str, default_registry: str | None = None) -> ImageReference:
        """Parse ``host[:port]/path/repo:tag``.

        The first path component is taken as the registry host when it looks
        like one (contains ``.`` or ``:``, or is ``localhost``); otherwise
        ``default_registry`` is used.

        Raises:
            ValueError: If the text has no tag, no resolvable registry,
                or uses a digest.
        """
        text = text.strip()
        if "@" in text:
            msg = f"Digest references are not supported: {text!r}"
            raise ValueError(msg)

        # The tag separator is the last colon after the last slash,
        # so registry ports are not mistaken for tags.
        slash = text.rfind("/")
        colon = text.rfind(":")
        if colon <= slash:
            msg = f"Image reference must carry an explicit tag: {text!r}"
            raise ValueError(msg)
        name, tag = text[:colon], text[colon + 1 :]

        first, sep, rest = name.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        elif default_registry:
            registry, repository = default_registry.rstrip("/"), name
        else:
            msg = f"Image reference has no registry host and no default is configured: {text!r}"
            raise ValueError(msg)

        return cls(registry=registry, repository=repository, tag=tag)


__all__ = ["MUTABLE_TAGS", "ImageReference"]
