"""Runtime support for state hierarchies processed by state_gen.

Source modules mark their Bloc/Cubit classes with ``@enhance_state``; the
generated ``<stem>_match.py`` companion imports ``UnknownVariantError`` from
here. Nothing in this module inspects or rewrites the decorated class.
"""

ANNOTATION_OPTIONS = ("map", "map_some", "log")


class UnknownVariantError(TypeError):
    """Raised by a generated ``map`` when the receiver matches no known variant.

    Only reachable when a variant was added to the source after the companion
    module was generated. Regenerate to fix.
    """

    def __init__(self, type_name: str):
        super().__init__(
            f"Unknown state type: {type_name}. "
            "The companion module is stale; regenerate it with state_gen."
        )
        self.type_name = type_name


def enhance_state(cls=None, *, map: bool = True, map_some: bool = True, log: bool = True):
    """Mark a Bloc/Cubit class for match/log extension generation.

    Usable bare (``@enhance_state``) or with options
    (``@enhance_state(map_some=False)``). The options are read statically by
    state_gen, so they must be literal booleans. The chosen options are kept
    on the class as ``__enhance_state__`` for introspection.
    """
    options = {"map": map, "map_some": map_some, "log": log}

    def decorate(target):
        target.__enhance_state__ = dict(options)
        return target

    if cls is None:
        return decorate
    return decorate(cls)
