"""Sandbox module for node-authored code and remote node execution."""

from nodeflow.sandbox.executor import RemoteNodeClient, ScriptSandbox

__all__ = ["RemoteNodeClient", "ScriptSandbox"]
