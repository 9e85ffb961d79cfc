"""Order ledger domain: aggregate, reducer, status machine and applier."""
