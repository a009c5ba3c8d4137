"""Kernel event topics. Names are part of the external contract and observable by callers."""


class KernelTopics:
    """Topics published by the kernel. The coordinator and executor subscribe to them."""

    # An extension announced readiness; resumes deferred extension groups
    EXTENSION_READY = "MIDDLEWARE_READY"

    # A unit finished bootstrap; releases the lock and resumes the next deferred unit
    UNIT_BOOTSTRAPPED = "FYNAPP_BOOTSTRAPPED"

    # A unit's bootstrap raised; handled like completion so the queue keeps moving
    UNIT_BOOTSTRAP_FAILED = "FYNAPP_BOOTSTRAP_FAILED"

    # A deferred bootstrap waited past the configured timeout and was dropped
    UNIT_BOOTSTRAP_TIMEOUT = "FYNAPP_BOOTSTRAP_TIMEOUT"


# Payload contracts (documentation)
EXTENSION_READY_PAYLOAD = {"name": "str", "status": "str", "call_context": "CallContext", "share": "Any"}
UNIT_BOOTSTRAPPED_PAYLOAD = {"name": "str", "version": "str"}
UNIT_BOOTSTRAP_FAILED_PAYLOAD = {"name": "str", "version": "str", "error": "BaseException"}
UNIT_BOOTSTRAP_TIMEOUT_PAYLOAD = {"name": "str", "version": "str", "reason": "str", "timeout": "float"}
