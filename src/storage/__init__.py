"""Job directory layout, durable state and job locks."""
