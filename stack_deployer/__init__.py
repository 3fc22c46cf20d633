"""Stack deployment engine: change sets, assets and bootstrap checks for CloudFormation."""

__version__ = "0.1.0"
