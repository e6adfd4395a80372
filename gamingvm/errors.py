"""Exception hierarchy for gamingvm.

Every error carries the component that raised it so the CLI can report
``<component>: <message>`` without inspecting the exception type.
"""


class GamingVMError(Exception):
    component = "gamingvm"


class ConfigError(GamingVMError):
    component = "config"


class IdentityResolutionError(GamingVMError):
    """Caller IP lookup failed or returned an unusable body."""

    component = "identity"


class NoZonesAvailableError(GamingVMError):
    component = "zones"

    def __init__(self, region: str):
        self.region = region
        super().__init__(f"No candidate availability zones in '{region}'")


class RuleTableError(GamingVMError):
    component = "rules"


class DuplicateRuleKeyError(RuleTableError):
    """Two rule table entries flatten to the same reconciliation key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Duplicate rule key '{key}' in rule table")


class PolicyBindingError(GamingVMError):
    """An IAM attachment step failed, leaving the role partially bound."""

    component = "iam"

    def __init__(self, attachment: str, role_name: str, cause: Exception):
        self.attachment = attachment
        self.role_name = role_name
        super().__init__(
            f"Failed to bind '{attachment}' for role '{role_name}': {cause}"
        )


class FulfillmentTimeoutError(GamingVMError):
    """Spot request was not fulfilled in time. The request itself still exists."""

    component = "instance"

    def __init__(self, spot_request_id: str, timeout: int):
        self.spot_request_id = spot_request_id
        self.timeout = timeout
        super().__init__(
            f"Spot request '{spot_request_id}' not fulfilled after {timeout}s"
        )


class ProviderCallError(GamingVMError):
    """AWS API call failed. The original exception is chained as ``__cause__``."""

    def __init__(self, component: str, call: str, cause: Exception):
        self.component = component
        self.call = call
        super().__init__(f"{call} failed: {cause}")
