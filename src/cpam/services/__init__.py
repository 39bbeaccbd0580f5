"""CPAM services - batch orchestration and revision proposals."""
