"""HTTP API for the Contract E-Sign Pipeline."""
