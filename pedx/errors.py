# =========================================
# 📄 File: pedx/errors.py
# Purpose: Failure taxonomy shared by every pipeline stage
# =========================================


class PipelineError(Exception):
    """Base class for every failure the pipeline records in the run report."""


class DecodeError(PipelineError):
    """File could not be decoded/parsed with any candidate encoding."""

    def __init__(self, path, message=None):
        self.path = str(path)
        super().__init__(message or f"Could not decode {self.path} with any candidate encoding")


class MappingSkipped(PipelineError):
    """No mapping rule applies to a file (informational, not a failure)."""

    def __init__(self, source, reason):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


class RowParseError(PipelineError):
    """A single cell could not be converted to its target type."""

    def __init__(self, source, row_number, column, value, message=None):
        self.source = source
        self.row_number = row_number
        self.column = column
        self.value = value
        super().__init__(
            message or f"{source} row {row_number}: cannot parse {column}={value!r}"
        )


class UnresolvedParentError(PipelineError):
    """Video without a City, or Pedestrian without a Video."""

    def __init__(self, entity, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key!r} has no resolvable parent")


class ExternalServiceError(PipelineError):
    """Geocoding call failed, timed out, or returned an error payload."""

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)


class MergeConflictError(PipelineError):
    """Two City rows cannot be merged automatically; needs manual review."""

    def __init__(self, survivor_id, duplicate_id, reason):
        self.survivor_id = survivor_id
        self.duplicate_id = duplicate_id
        self.reason = reason
        super().__init__(f"cannot merge city {duplicate_id} into {survivor_id}: {reason}")
