from __future__ import annotations


class SourceNotFound(LookupError):
    pass


class ChangeNotFound(LookupError):
    pass


class PlanLimitExceeded(ValueError):
    pass


class InvalidTransition(ValueError):
    pass
