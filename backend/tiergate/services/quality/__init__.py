"""Response quality monitoring and alerting."""
