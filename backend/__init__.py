"""Service layer of the railway reservation system"""
