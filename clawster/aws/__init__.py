"""AWS deployment targets and the managers they compose."""
