"""RepoLens - repository analysis and documentation synthesis."""

__version__ = "0.3.0"
