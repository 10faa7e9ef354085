"""
Gateway: offline tile/asset cache in front of the app

- Stores tiles and app assets in named blob stores (`data/stores/{name}/...`)
- Routes every content request by category: network-first navigations,
  cache-first build assets and tiles, stale-while-revalidate for the rest
- Lifecycle: activate a generation (evict old asset stores), clear everything
- HTTP surface: /health, /stats, /_offline/{activate,install,clear,build}, catch-all
"""
