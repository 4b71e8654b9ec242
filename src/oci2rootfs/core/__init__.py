"""Core building blocks: configuration, data types, references and the registry client."""
