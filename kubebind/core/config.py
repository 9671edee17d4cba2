from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CLUSTER_DOMAIN = "svc.cluster.local"
DEFAULT_FORWARDER_SELECTOR = {"app.kubernetes.io/component": "bindings-forwarder"}


class BindingsSettings(BaseSettings):
    """kubebind controller and forwarder settings.

    Every field can be set from the environment with a ``KUBEBIND_`` prefix
    (``KUBEBIND_NAMESPACE``, ``KUBEBIND_ALLOWED_URLS='["http://*"]'``).
    """

    model_config = SettingsConfigDict(
        env_prefix="KUBEBIND_", env_file=".env", extra="ignore"
    )

    namespace: str = Field(
        "kubebind", description="Namespace the operator runs in and stores BoundEndpoints in."
    )
    operator_name: str = Field(
        "kubebind-operator",
        description="Name of the operator-identity object carrying the registration id.",
    )
    cluster_domain: str = Field(
        DEFAULT_CLUSTER_DOMAIN, description="Last part of in-cluster Service FQDNs."
    )

    polling_interval: float = Field(
        10.0, description="Seconds between polls of the remote endpoint API."
    )
    action_retry_interval: float = Field(
        2.0, description="Seconds between retries of failed create/update/delete actions."
    )
    operator_id_retry_interval: float = Field(
        30.0, description="Seconds between checks for the operator registration id."
    )
    port_range_min: int = Field(10000, description="Lowest allocatable forwarder port.")
    port_range_max: int = Field(65535, description="Highest allocatable forwarder port.")

    target_service_labels: dict[str, str] = Field(
        default_factory=dict, description="Labels added to every target Service."
    )
    target_service_annotations: dict[str, str] = Field(
        default_factory=dict, description="Annotations added to every target Service."
    )
    upstream_service_selector: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_FORWARDER_SELECTOR),
        description="Pod selector of the forwarder pods behind upstream Services.",
    )
    allowed_urls: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Patterns ([scheme://]<service>.<namespace>) that may be bound.",
    )

    connectivity_attempts: int = Field(5, description="Dial attempts per connectivity probe.")
    connectivity_backoff: float = Field(
        3.0, description="Linear backoff step in seconds between connectivity attempts."
    )
    connectivity_dial_timeout: float = Field(
        1.0, description="Timeout in seconds of a single connectivity dial."
    )
    refresh_interval: float = Field(
        600.0, description="Seconds after which a reconciled BoundEndpoint is revisited."
    )
    reconcile_workers: int = Field(2, description="Concurrent reconcile workers.")

    api_url: str = Field("https://api.ngrok.com", description="Remote endpoint API base URL.")
    api_key: str | None = Field(None, description="Remote endpoint API key.")
    api_timeout: float = Field(10.0, description="Remote endpoint API request timeout.")

    forwarder_bind_host: str = Field("0.0.0.0", description="Forwarder listen address.")
    pod_name: str = Field("", description="Forwarder pod name sent in the handshake.")
    pod_namespace: str = Field("", description="Forwarder pod namespace sent in the handshake.")
    pod_uid: str = Field("", description="Forwarder pod uid sent in the handshake.")

    log_level: str = Field("INFO", description="loguru log level.")
    debug_scopes: list[str] = Field(
        default_factory=list, description="Module prefixes to log at DEBUG regardless of level."
    )

    @model_validator(mode="after")
    def _check_port_range(self) -> "BindingsSettings":
        if not 1 <= self.port_range_min <= 65535 or not 1 <= self.port_range_max <= 65535:
            raise ValueError("port range bounds must be within 1..65535")
        if self.port_range_min > self.port_range_max:
            raise ValueError(
                f"port_range_min ({self.port_range_min}) is greater than "
                f"port_range_max ({self.port_range_max})"
            )
        return self
