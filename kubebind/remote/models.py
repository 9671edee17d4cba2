from pydantic import BaseModel, ConfigDict, Field


class RemoteEndpoint(BaseModel):
    """
    One endpoint record as returned by the remote endpoint API.

    Records are flat; many of them may point at the same in-cluster service
    and are grouped into one BoundEndpoint by the aggregator.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(description="Remote endpoint id, e.g. ep_2abc.")
    uri: str = Field("", description="API URI of the endpoint record.")
    proto: str = Field("", description="Declared protocol (http, https, tcp, tls).")
    public_url: str = Field("", description="[scheme://]<service>.<namespace>[:port].")


class RemoteEndpointPage(BaseModel):
    """One page of ``GET /kubernetes_operators/{id}/bound_endpoints``."""

    model_config = ConfigDict(extra="ignore")

    endpoints: list[RemoteEndpoint] = Field(default_factory=list)
    uri: str = ""
    next_page_uri: str | None = None
