"""Terminal front end: REPL, keyboard monitor, signals and rendering."""
