"""CoView tests."""
