"""
Constants for the ARM template backup tool.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Timestamp Formats
# =============================================================================

# Used in file names and the summary's backup_timestamp field
FILE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

# Human-readable UTC date for the summary's backup_date field
BACKUP_DATE_FORMAT = "%a %b %d %H:%M:%S UTC %Y"

# Second precision UTC, used in error documents and reports
ISO_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_OUTPUT_DIR = "."
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_RETRY_ATTEMPTS = 1
DEFAULT_RETRY_MIN_WAIT = 2
DEFAULT_RETRY_MAX_WAIT = 30
DEFAULT_PARALLEL_WORKERS = 4

# Number of characters of an invalid file shown in the validation warning
INVALID_JSON_PREVIEW_CHARS = 100

# =============================================================================
# Orchestration Policies
# =============================================================================

POLICY_SEQUENTIAL = "sequential"
POLICY_PARALLEL = "parallel"

ALL_POLICIES = [POLICY_SEQUENTIAL, POLICY_PARALLEL]

# =============================================================================
# Environment Run Status
# =============================================================================

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_SKIPPED = "skipped"

# =============================================================================
# Export Methods
# =============================================================================

METHOD_PRIMARY = "primary"
METHOD_FALLBACK = "fallback"
METHOD_NONE = "none"

# Options passed to the resource group export API
EXPORT_TEMPLATE_OPTIONS = "IncludeParameterDefaultValue,SkipResourceNameParameterization"

# Error written to the backup file when neither export method produced a template
NO_DEPLOYMENTS_ERROR = "No deployments found to export"

# =============================================================================
# File Naming
# =============================================================================

SUMMARY_FILE_PREFIX = "backup_summary_"
REPORT_FILE_PREFIX = "backup_report_"

# =============================================================================
# Log Markers
# =============================================================================

MARK_SUCCESS = "✓"
MARK_WARNING = "⚠"
MARK_ERROR = "❌"

LOG_SEPARATOR = "=" * 43

# =============================================================================
# Trigger Metadata (GitHub Actions)
# =============================================================================

ENV_TRIGGER = "GITHUB_EVENT_NAME"
ENV_COMMIT_SHA = "GITHUB_SHA"
ENV_STEP_SUMMARY = "GITHUB_STEP_SUMMARY"

DEFAULT_TRIGGER = "manual"
DEFAULT_COMMIT_SHA = "unknown"

# =============================================================================
# Azure Clouds
# =============================================================================

CLOUD_PUBLIC = "AzureCloud"
CLOUD_US_GOVERNMENT = "AzureUSGovernment"
CLOUD_CHINA = "AzureChinaCloud"

# Resource Manager endpoints per cloud
MANAGEMENT_ENDPOINTS = {
    CLOUD_PUBLIC: "https://management.azure.com",
    CLOUD_US_GOVERNMENT: "https://management.usgovcloudapi.net",
    CLOUD_CHINA: "https://management.chinacloudapi.cn",
}

# Entra ID authority hosts per cloud
AUTHORITY_HOSTS = {
    CLOUD_PUBLIC: "login.microsoftonline.com",
    CLOUD_US_GOVERNMENT: "login.microsoftonline.us",
    CLOUD_CHINA: "login.chinacloudapi.cn",
}

ALL_CLOUDS = [CLOUD_PUBLIC, CLOUD_US_GOVERNMENT, CLOUD_CHINA]

# Azure error status codes that indicate auth/permission issues
AZURE_AUTH_STATUS_CODES = {401, 403}
