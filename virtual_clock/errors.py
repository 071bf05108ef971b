"""
Exceptions raised by the virtual clock engine.

Most problems the engine meets at runtime are recovered locally (rate
clamping, persistence failures, misbehaving subscribers) and only show
up in the logs. The exceptions here are the ones that are surfaced to the
caller.
"""


class ConfigurationError(ValueError):
    """
    The engine was configured in a way it refuses to run with.

    Raised at initialisation, for example when acceleration is requested
    in production without ``force_enable``, or when a configuration file
    does not validate. The engine does not become usable.
    """
