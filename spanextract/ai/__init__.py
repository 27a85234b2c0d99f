"""Model-facing components: data types, backends, prompting and orchestration."""
