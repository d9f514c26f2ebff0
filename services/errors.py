class ReactionRoleError(Exception):
    """Base class for reaction role failures handled inside the engine."""


class StaleReferenceError(ReactionRoleError):
    """A bound channel, guild or message no longer exists."""

    def __init__(self, what: str, ident: str):
        super().__init__(f"{what} {ident} no longer exists")
        self.what = what
        self.ident = ident


class StaleRoleError(ReactionRoleError):
    """One or more bound role ids no longer resolve in the guild."""

    def __init__(self, missing: list[str]):
        super().__init__(f"missing roles: {', '.join(missing)}")
        self.missing = missing
