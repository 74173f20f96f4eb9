"""Core pipeline of route-cli.

This package holds everything between a subscription document and a running
target command:
- Subscription parsing and node modeling
- Reachability probing and node selection
- sing-box config generation
- Proxy core process lifecycle
- Scoped launch of the target command

The command-line layer in ``route_cli.cmd`` only wires these pieces together
and reports their results.
"""
