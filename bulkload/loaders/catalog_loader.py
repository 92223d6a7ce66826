"""
catalog_loader.py - Configuration for loading product catalog CSV files

products.csv        sku,type,has_options
product_values.csv  sku,attribute,store_id,value
product_options.csv sku,title,sort_order
"""

from bulkload.load_csv_engine import ref

SOURCE_NAME = "catalog"

CSV_PATHS = {
    "products": "csvs/catalog/products.csv",
    "product_values": "csvs/catalog/product_values.csv",
    "product_options": "csvs/catalog/product_options.csv",
}

# Natural key -> id lookups
LOOKUPS = {
    # existing products only: values and options of unknown SKUs are skipped
    "product": {"table": "products", "search": "sku", "target": "id"},
    # products.csv may introduce new SKUs, their ids are allocated up front
    "new_product": {
        "table": "products",
        "search": "sku",
        "target": "id",
        "auto_increment": {"type_id": "simple", "has_options": False},
    },
    "product_option": {
        "table": "product_options",
        "search": "title",
        "target": "option_id",
        "foreign": "product_id",
        "foreign_lookup": "product",
    },
}

ENTITIES = {
    "products": {
        "table": "products",
        "columns": {
            "id": ref("new_product", "sku"),
            "sku": "sku",
            "type_id": "type",
            "has_options": "has_options",
            "url_path": ref("new_product", "sku"),
        },
        "formatted": {"url_path": "catalog/product/view/id/{}"},
        "on_duplicate": ["type_id", "has_options", "url_path"],
        "policy": {"has_options": "prefer_non_null"},
    },
    "product_values": {
        "table": "product_values",
        "columns": {
            "product_id": ref("product", "sku"),
            "attribute": "attribute",
            "store_id": "store_id",
            "value": "value",
        },
        "on_duplicate": ["value"],
        "key": ["product_id", "attribute", "store_id"],
    },
    "product_options": {
        "table": "product_options",
        "columns": {
            "option_id": ref("product_option", "title", "sku"),
            "product_id": ref("product", "sku"),
            "title": "title",
            "sort_order": "sort_order",
        },
        "on_duplicate": ["sort_order"],
    },
}
