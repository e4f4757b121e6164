"""Format adapters, byte-range fetching, previews and the engine facade."""
