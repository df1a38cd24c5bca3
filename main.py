#!/usr/bin/env python3
"""
VPN Hotspot launcher for running from a source checkout.

    sudo python main.py --debug

Installed copies use the `vpn-hotspot` console script instead.
"""

from vpnhotspot.cli import main

if __name__ == "__main__":
    main()
