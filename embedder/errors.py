"""Errors raised while packing assets and reading them back."""


class EmbedderError(RuntimeError):
    """Base class for all runtime-embedder errors."""


class PackError(EmbedderError):
    """Raised when a pack operation has to be aborted."""


class SourceReadError(PackError):
    """Raised when an input file cannot be read."""


class CompressionError(PackError):
    """Raised when the gzip encoder fails."""


class DuplicateAssetError(PackError):
    """Raised when two members share the same name."""


class BuildError(EmbedderError):
    """Raised when the bundle directory cannot be assembled."""


class MalformedMetadataError(EmbedderError, ValueError):
    """Raised when a metadata fragment cannot be parsed."""


class AssetNotFoundError(EmbedderError, KeyError):
    """Raised when a member name is not in the metadata table."""

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0]) if self.args else ''


class CorruptAssetError(EmbedderError):
    """Raised when a member's bytes cannot be turned back into the original content."""


class IntegrityError(CorruptAssetError):
    """Raised when a record points outside its blob (mismatched blob/table pair)."""
