"""Trade clients and the execution engine."""
