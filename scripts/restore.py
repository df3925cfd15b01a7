from __future__ import annotations

from mailrestore.apps.cli.main import main


if __name__ == "__main__":
    # Same entry point as the mailrestore console script, for running from a checkout.
    main()
