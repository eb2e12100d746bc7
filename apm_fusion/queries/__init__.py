"""Query builders for PromQL and PPL."""
