"""Command line interface modules.

This package provides the command-line tools for:
- Managing the subscription URL and cache
- Listing and pinning nodes
- Running a command through the selected node
- Diagnosing the local setup

The command modules wire the core pipeline together and report its
results; they hold no pipeline logic of their own.
"""
