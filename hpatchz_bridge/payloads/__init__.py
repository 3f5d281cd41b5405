"""Bundled hpatchz executable images (hpatchz_4.6.9.exe, hpatchz_4.8.0.exe), added at build time."""
