"""Entity store contract, implementations and persisted models."""
