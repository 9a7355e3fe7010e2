CLUSTER_STATUS_PENDING = "pending"
CLUSTER_STATUS_CREATING_PROJECT = "creating_project"
CLUSTER_STATUS_CREATING_CLUSTER = "creating_cluster"
CLUSTER_STATUS_CREATING_USER = "creating_user"
CLUSTER_STATUS_CONFIGURING_NETWORK = "configuring_network"
CLUSTER_STATUS_READY = "ready"
CLUSTER_STATUS_FAILED = "failed"
CLUSTER_STATUS_DELETED = "deleted"

# Records in these states do not block a new provisioning attempt.
CLUSTER_RELEASED_STATUSES = (CLUSTER_STATUS_FAILED, CLUSTER_STATUS_DELETED)
CLUSTER_IN_FLIGHT_STATUSES = (
    CLUSTER_STATUS_PENDING,
    CLUSTER_STATUS_CREATING_PROJECT,
    CLUSTER_STATUS_CREATING_CLUSTER,
    CLUSTER_STATUS_CREATING_USER,
    CLUSTER_STATUS_CONFIGURING_NETWORK,
)

STEP_PROJECT = "project"
STEP_CLUSTER = "cluster"
STEP_DATABASE_USER = "database_user"
STEP_NETWORK = "network"
STEP_SECRET = "secret"
STEP_INVITATION = "invitation"
STEP_BOOTSTRAP = "bootstrap"
STEP_READY = "ready"

ERROR_NOT_CONFIGURED = "not_configured"
ERROR_ALREADY_PROVISIONED = "already_provisioned"
ERROR_UPSTREAM = "upstream_error"
ERROR_TIMEOUT = "timeout"
ERROR_PARTIAL_CLEANUP = "partial_cleanup_failure"
ERROR_INVALID_STATE = "invalid_state"
ERROR_NOT_FOUND = "not_found"

INVITATION_STATUS_PENDING = "pending"
INVITATION_STATUS_ACCEPTED = "accepted"
INVITATION_STATUS_EXPIRED = "expired"
INVITATION_STATUS_CANCELLED = "cancelled"

SECRET_STATUS_ACTIVE = "active"
SECRET_STATUS_DELETED = "deleted"

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_DONE = "done"
JOB_STATUS_FAILED = "failed"

LOW_TIER_INSTANCE_SIZE = "M0"
LOW_TIER_STORAGE_LIMIT_MB = 512
LOW_TIER_MAX_CONNECTIONS = 500
CONSOLE_ROLE_READ_WRITE = "GROUP_DATA_ACCESS_READ_WRITE"
REDACTED = "[REDACTED]"
