"""Job lifecycle: creation, dispatch, approval and self-healing."""
