"""cron-runner command line interfaces."""
