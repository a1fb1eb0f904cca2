# albumizer/core/errors.py
# Error taxonomy:
# - ConfigError: fatal, aborts the run (non-zero exit)
# - ManifestError: one manifest file is skipped
# - MetadataWriteError: one entry is skipped
# - StructuralIntegrityError: the container can't be rewritten safely;
#   the file is copied without metadata instead


class AlbumizerError(Exception):
    """Base class for everything albumizer raises on purpose."""


class ConfigError(AlbumizerError):
    pass


class ManifestError(AlbumizerError):
    def __init__(self, path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class MetadataWriteError(AlbumizerError):
    pass


class StructuralIntegrityError(MetadataWriteError):
    pass
