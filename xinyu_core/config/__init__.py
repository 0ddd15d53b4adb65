"""配置层：静态部署配置 (settings) 与可变对话参数 (store)。"""
