"""Device trees, change notification and allocation serving for device plugins."""