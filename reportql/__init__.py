"""reportql - declarative, model-agnostic reporting queries over a discovered relational schema."""

__version__ = "0.1.0"
