"""Built-in kordlink plugins."""
