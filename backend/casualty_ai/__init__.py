"""Evidence analysis aggregation and casualty report synthesis."""
