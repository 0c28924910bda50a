"""Order synchronization engine: hybrid sync, cursors, runs and scheduling."""
