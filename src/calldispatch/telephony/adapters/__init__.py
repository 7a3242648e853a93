"""Provider gateway adapters that do not talk to a real provider."""
