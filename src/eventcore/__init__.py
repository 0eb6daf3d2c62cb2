"""Event planner core service: payment webhook ingestion and schema tooling."""
