# Core restroom services: transforms, hydration and the query layer.
# Import submodules directly (restrooms.core.locations etc.); the store
# depends on core.errors, so nothing is re-exported here.
