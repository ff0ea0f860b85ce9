"""
Canonical reconciliation outcomes reported by the webhook endpoints.

Single source of truth: import this everywhere status strings are written or compared.
Plain class constants (not Python Enum) so the values serialize to bare strings
in JSON responses without .value unwrapping.

Per incoming event:
    deleted=true  → DELETED | NOT_FOUND
    deleted=false → CREATED | UPDATED | UNCHANGED
"""


class RecordStatus:
    CREATED = "created"      # no record existed for the natural key
    UPDATED = "updated"      # stored record differed and was replaced
    UNCHANGED = "unchanged"  # incoming data equals stored record; write skipped
    DELETED = "deleted"      # record removed
    NOT_FOUND = "not_found"  # delete requested for a key that does not exist

    ALL = frozenset({CREATED, UPDATED, UNCHANGED, DELETED, NOT_FOUND})

    # Outcomes that wrote to the store and are forwarded downstream
    WRITTEN = frozenset({CREATED, UPDATED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL
