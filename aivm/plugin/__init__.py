"""Bootstrap plugins: contract, YAML and mise plugins, registry, ordering and execution."""