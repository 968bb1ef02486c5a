"""Task execution: command runner, workflow commands, engine and worker."""
