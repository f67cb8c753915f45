"""Exception types shared across the extraction, review and export stages."""


class LedgerError(Exception):
    """Base class for every error raised by pagewise_ledger."""


class SchemaError(LedgerError):
    """A field schema is malformed (e.g. duplicate keys)."""


class ExtractionError(LedgerError):
    """Whole-document extraction failure; the document yields no record."""


# ---------- oracle errors, surfaced per page ----------
class LLMAuthError(LedgerError): ...
class LLMRuntimeError(LedgerError): ...


class InvalidTransitionError(LedgerError):
    """A review action was requested from a state that does not allow it."""
