"""BoundEndpoint aggregation, reconciliation and forwarding."""
