"""Shell execution and the terminal controller."""
