"""Custom Dishka scopes for airlocal."""

from dishka import BaseScope, new_scope


class Scope(BaseScope):  # type: ignore[misc]  # BaseScope is designed to be subclassed
    """airlocal dependency injection scopes.

    Hierarchy: APP -> RUN

    - APP: Process lifetime (Docker client, settings)
    - RUN: One sync or check invocation
    """

    APP = new_scope("APP")
    RUN = new_scope("RUN")
