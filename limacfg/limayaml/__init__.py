"""Instance configuration: schema, default rules, filling of defaults, validation and loading."""