"""
spire-harness: bring up a SPIRE control plane for integration tests.

Starts a server and an agent as external processes, hands the agent a join
token, waits for a workload identity to reach the agent, runs a dependent
test suite against the workload socket, and tears everything down again.
"""

__version__ = "0.1.0"
