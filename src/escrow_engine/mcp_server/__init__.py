"""Model Context Protocol tools for agent clients."""
