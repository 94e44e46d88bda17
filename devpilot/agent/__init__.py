"""Agent core: provider adapters, the agent loop and subagent orchestration."""
