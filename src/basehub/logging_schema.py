"""Log event types for structured logging."""

from enum import StrEnum


class LogEvent(StrEnum):
    """Log event types for the instance manager.

    Used with logger.info/warning/error extra dict:
        logger.info("message", extra={"event": LogEvent.INSTANCE_CREATED, ...})
    """

    # Registry events
    REGISTRY_LOADED = "registry_loaded"
    REGISTRY_LOAD_FAILED = "registry_load_failed"
    REGISTRY_MIGRATED = "registry_migrated"
    REGISTRY_WRITE_FAILED = "registry_write_failed"
    REGISTRY_LOCK_TIMEOUT = "registry_lock_timeout"

    # Instance lifecycle events
    INSTANCE_CREATING = "instance_creating"
    INSTANCE_CREATED = "instance_created"
    INSTANCE_CREATE_FAILED = "instance_create_failed"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_RESTARTED = "instance_restarted"
    INSTANCE_DELETED = "instance_deleted"

    # Rollback events
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"

    # Provisioning events
    PROVISION_STARTED = "provision_started"
    PROVISION_COMPLETED = "provision_completed"
    COMMAND_FAILED = "command_failed"
    COMMAND_TIMEOUT = "command_timeout"
    ARTIFACT_REMOVED = "artifact_removed"
    READINESS_CONFIRMED = "readiness_confirmed"
    READINESS_TIMEOUT = "readiness_timeout"
    SERVICE_CHECKED = "service_checked"

    # Allocation events
    PORT_ALLOCATED = "port_allocated"
    CREDENTIALS_FORGED = "credentials_forged"

    # Reconciliation events
    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    STATUS_QUERY_FAILED = "status_query_failed"
    RECONCILE_COMPLETE = "reconcile_complete"
