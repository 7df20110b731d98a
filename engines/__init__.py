"""Session engines: turn ledger, trigger policy, scoring, trends and reporting."""
