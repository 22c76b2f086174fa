"""Sync integration tests.

This package contains tests that run a real sync server process:
- Tasks moving between devices and last-writer-wins precedence
- Deletions and tombstones
- Accounts, sessions and session loss
- Server outages and recovery
- Concurrent pushes for one account
- The command line talking to the server
"""
