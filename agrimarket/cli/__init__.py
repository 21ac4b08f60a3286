"""AgriMarket command-line interface."""
