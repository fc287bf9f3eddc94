"""Generic, Intel, Mellanox and virtual plugins that plan and apply node configuration."""